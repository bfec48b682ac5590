import re
from typing import Optional, Set

_STRIP_RE = re.compile(r"[\s\-()]")
LOCAL_RE = re.compile(r"^0\d{9}$")


def clean_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return _STRIP_RE.sub("", str(phone)).lstrip("+")


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Local 10-digit form for Kenyan numbers.

        '+254 712-345-678' -> '0712345678'
        '254712345678'     -> '0712345678'
        '712345678'        -> '0712345678'

    Anything else comes back cleaned but otherwise untouched; None for blanks.
    """
    cleaned = clean_phone(phone)
    if not cleaned:
        return None
    if cleaned.startswith("254") and len(cleaned) == 12:
        return "0" + cleaned[3:]
    if len(cleaned) == 9 and cleaned[0] in ("1", "7"):
        return "0" + cleaned
    return cleaned


def to_international(phone: Optional[str]) -> Optional[str]:
    """'0712345678' -> '254712345678' (the form SMS gateways expect)."""
    local = normalize_phone(phone)
    if local and LOCAL_RE.match(local):
        return "254" + local[1:]
    return local


def phone_variants(phone: Optional[str]) -> Set[str]:
    """Every canonical spelling of a number, for matching against stored phones."""
    local = normalize_phone(phone)
    if not local:
        return set()
    if not LOCAL_RE.match(local):
        return {local}
    bare = local[1:]
    return {local, bare, "254" + bare, "+254" + bare}
