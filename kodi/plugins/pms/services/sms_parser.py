import re
from datetime import datetime
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from kodi.plugins.pms.helpers import parse_amount, ZERO
from kodi.plugins.pms.models.payment import ParseResult, PaymentEvent
from kodi.plugins.pms.utils.phone import phone_variants
from kodi.utils.date_helper import local_tz, period_of
from kodi.utils.exceptions import ParseError


# QK12ABC3DE Confirmed. Ksh5,000.00 received from JOHN DOE 0712345678 on 5/1/25 at 10:15 AM. ... Account Number 0712345678
MPESA_SMS_RE = re.compile(
    r"(?P<code>\w+)\s+Confirmed\.\s+"
    r"Ksh\s?(?P<amount>[\d,]+(?:\.\d{1,2})?)\s+"
    r"received\s+from\s+(?P<name>[^0-9]+?)\s+(?P<phone>\+?\d{9,12})\s+"
    r"on\s+(?P<date>\d{1,2}/\d{1,2}/\d{2})"
    r"(?:\s+at\s+(?P<time>\d{1,2}:\d{2})(?:\s*(?P<ampm>[AP]M))?)?"
    r".*?Account\s+Number\s+(?P<account>[\w\d]+)",
    re.IGNORECASE | re.DOTALL,
)


class SmsParser:
    """Turns an M-Pesa paybill confirmation SMS into a PaymentEvent."""

    def __init__(self, tz: Optional[ZoneInfo] = None):
        self.tz = tz or local_tz()

    def parse(self, raw_body: Optional[str]) -> ParseResult:
        if raw_body is None or not str(raw_body).strip():
            return ParseResult(error=ParseError("No SMS body provided"))

        match = MPESA_SMS_RE.search(str(raw_body))
        if not match:
            return ParseResult(error=ParseError("Invalid M-Pesa SMS format"))

        try:
            amount = parse_amount(match.group("amount"))
        except ValueError:
            return ParseResult(error=ParseError("Invalid amount", {"amount": match.group("amount")}))
        if amount <= ZERO:
            return ParseResult(error=ParseError("Amount must be positive", {"amount": str(amount)}))

        try:
            occurred_at = self._occurred_at(match.group("date"), match.group("time"), match.group("ampm"))
        except ValueError as e:
            return ParseResult(error=ParseError("Invalid transaction date", {"date": match.group("date"), "error": str(e)}))

        sender_phone = match.group("phone")
        account = match.group("account").strip()

        event = PaymentEvent(
            transaction_id=match.group("code").upper(),
            amount=amount,
            sender_name=" ".join(match.group("name").split()),
            sender_phone=sender_phone,
            account_reference=account,
            occurred_at=occurred_at,
            payment_period=period_of(occurred_at),
            sender_phone_variants=phone_variants(sender_phone),
            account_reference_variants=phone_variants(account),
        )
        return ParseResult(event=event)

    def parse_payload(self, payload: Any) -> ParseResult:
        """Webhook form: {"body": "<sms text>"}"""
        body = payload.get("body") if isinstance(payload, Mapping) else None
        return self.parse(body)

    def _occurred_at(self, date_text: str, time_text: Optional[str], ampm: Optional[str]) -> datetime:
        day, month, year = (int(p) for p in date_text.split("/"))
        hour, minute = 0, 0
        if time_text:
            hour, minute = (int(p) for p in time_text.split(":"))
            if ampm:
                if not 1 <= hour <= 12:
                    raise ValueError(f"hour {hour} out of range for 12-hour clock")
                hour = hour % 12 + (12 if ampm.upper() == "PM" else 0)
        # datetime() rejects impossible dates such as 31/2
        return datetime(2000 + year, month, day, hour, minute, tzinfo=self.tz)
