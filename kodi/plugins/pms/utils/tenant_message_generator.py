from datetime import datetime
from typing import Optional

from jinja2 import Environment, StrictUndefined

from kodi.core.config import settings
from kodi.plugins.pms.helpers import ZERO, format_amount
from kodi.plugins.pms.models.models import Allocation, Tenant, Unit

_env = Environment(undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True, autoescape=False)
_env.filters["ksh"] = format_amount

# Kept short: anything over 160 characters is billed as several SMS.
WELCOME_TEMPLATE = _env.from_string(
    "Welcome {{ name }}! Unit {{ unit_code }}. "
    "{% if utilities > 0 %}Rent {{ rent|ksh }} + Utils {{ utilities|ksh }} = {{ monthly|ksh }}/mo. "
    "{% else %}Rent KSH {{ monthly|ksh }}/mo. {% endif %}"
    "{% if deposit > 0 %}DEPOSIT: {{ deposit|ksh }} (one-time, refundable). 1st Payment: {{ (monthly + deposit)|ksh }}. {% endif %}"
    "Paybill {{ paybill }}, Acc {{ account }}. Due 1st. Call {{ contact }}"
)

DEPOSIT_CONFIRMATION_TEMPLATE = _env.from_string(
    "Thank you {{ name }}! Deposit CONFIRMED for Unit {{ unit_code }}. "
    "Amount: KSH {{ deposit|ksh }}. Date: {{ paid_date }}. Refundable at lease end. Welcome home!"
)

RENT_REMINDER_TEMPLATE = _env.from_string(
    "Hello {{ name }}, Rent reminder for Unit {{ unit_code }}. Amount due: KSH {{ amount_due|ksh }}. "
    "{% if deposit > 0 %}PLUS Outstanding deposit: {{ deposit|ksh }}. {% endif %}"
    "Due: {{ due }}. Pay: Paybill {{ paybill }}, Acc {{ account }}. Call {{ contact }}"
)

PAYMENT_CONFIRMATION_TEMPLATE = _env.from_string(
    "Payment received! {{ payment_type }}: KSH {{ amount|ksh }}. Unit: {{ unit_code }}. "
    "Ref: {{ reference }}. Thank you {{ name }}!"
)


def _payment_info() -> dict:
    return {"paybill": settings.PAYBILL_NUMBER, "contact": settings.CONTACT_PHONE}


def payment_type_label(allocation: Allocation) -> str:
    if allocation.rent > ZERO:
        return "Rent"
    if allocation.deposit > ZERO:
        return "Deposit"
    if allocation.utilities > ZERO:
        return "Utilities"
    return "Payment"


def welcome_sms(tenant: Tenant, unit: Unit) -> str:
    utilities = unit.utility_fees.total
    return WELCOME_TEMPLATE.render(
        name=tenant.name,
        unit_code=unit.unit_id,
        rent=unit.rent_amount,
        utilities=utilities,
        monthly=unit.rent_amount + utilities,
        deposit=unit.deposit_amount,
        account=tenant.phone or unit.unit_id,
        **_payment_info(),
    )


def deposit_confirmation_sms(tenant: Tenant, unit_code: str, paid_date: Optional[datetime]) -> str:
    return DEPOSIT_CONFIRMATION_TEMPLATE.render(
        name=tenant.name,
        unit_code=unit_code,
        deposit=tenant.deposit_state.amount,
        paid_date=paid_date.strftime("%d/%m/%Y") if paid_date else "-",
    )


def rent_reminder_sms(tenant: Tenant, unit: Unit, amount_due, outstanding_deposit=ZERO, due: str = "1st") -> str:
    return RENT_REMINDER_TEMPLATE.render(
        name=tenant.name,
        unit_code=unit.unit_id,
        amount_due=amount_due,
        deposit=outstanding_deposit,
        due=due,
        account=tenant.phone or unit.unit_id,
        **_payment_info(),
    )


def payment_confirmation_sms(tenant: Tenant, unit_code: str, amount, allocation: Allocation, reference: str) -> str:
    return PAYMENT_CONFIRMATION_TEMPLATE.render(
        name=tenant.name,
        unit_code=unit_code,
        amount=amount,
        payment_type=payment_type_label(allocation),
        reference=reference,
    )
