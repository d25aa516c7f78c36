"""
billing.py
Monthly gym billing: pro-ration of member fees over a calendar month and the
totals/status rules of a monthly billing record.

Nothing in here touches the database or the wall clock. Callers pass the
members, the period and an explicit ``as_of`` date, and decide themselves
whether the result is persisted.
"""

from __future__ import annotations

import calendar
import hashlib
import hmac
import math
from datetime import date, datetime

# Flat platform fee per member per month (500/year), not the member's own dues.
FIXED_MONTHLY_FEE = 41.67

MEMBERSHIP_TYPES = ('basic', 'premium', 'vip', 'personal_training', 'none')
BREAKDOWN_TYPES = ('basic', 'premium', 'vip', 'personal_training')
# partially_paid is kept for stored data; only full settlement is implemented.
BILLING_STATUSES = ('draft', 'sent', 'partially_paid', 'fully_paid', 'overdue')
PENDING_STATUSES = ('sent', 'partially_paid', 'overdue')
PAYMENT_METHODS = ('cash', 'card', 'upi', 'bank_transfer', 'online')

MONTH_NAMES = ['January', 'February', 'March', 'April', 'May', 'June',
               'July', 'August', 'September', 'October', 'November', 'December']

MIN_BILLING_YEAR = 2020


class BillingError(Exception):
    status_code = 500
    error_type = 'error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'ok': False, 'error': self.message, 'error_type': self.error_type}


class ValidationError(BillingError):
    status_code = 400
    error_type = 'validation'


class NotFoundError(BillingError):
    status_code = 404
    error_type = 'not_found'


class ConflictError(BillingError):
    status_code = 400
    error_type = 'conflict'


class NoBillableMembersError(ConflictError):
    def __init__(self, message: str = 'No billable members found for this gym'):
        super().__init__(message)


def round2(value: float) -> float:
    """Round half up to 2 decimals (currency minor units)."""
    return math.floor(float(value) * 100 + 0.5) / 100


def _as_date(value) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value)).date()


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def last_day_of_month(year: int, month: int) -> date:
    return date(year, month, days_in_month(year, month))


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), last_day_of_month(year, month)


def month_name(month: int) -> str:
    return MONTH_NAMES[month - 1]


def previous_month(as_of: date) -> tuple[int, int]:
    if as_of.month == 1:
        return as_of.year - 1, 12
    return as_of.year, as_of.month - 1


def is_current_month(year: int, month: int, as_of: date) -> bool:
    return year == as_of.year and month == as_of.month


def is_future_month(year: int, month: int, as_of: date) -> bool:
    return (year, month) > (as_of.year, as_of.month)


def gym_existed_in(created_at, year: int, month: int) -> bool:
    """A gym owes nothing for months before the month it was created in."""
    created = _as_date(created_at)
    if created is None:
        return True
    return (year, month) >= (created.year, created.month)


def months_back(as_of: date, count: int) -> list[tuple[int, int]]:
    """The ``count`` months before the month of ``as_of``, newest first."""
    out = []
    y, m = as_of.year, as_of.month
    for _ in range(count):
        y, m = (y - 1, 12) if m == 1 else (y, m - 1)
        out.append((y, m))
    return out


def months_since(created_at, as_of: date) -> int:
    created = _as_date(created_at)
    if created is None:
        return 0
    return (as_of.year - created.year) * 12 + as_of.month - created.month


def validate_period(year, month) -> tuple[int, int]:
    try:
        year = int(year)
        month = int(month)
    except (TypeError, ValueError):
        raise ValidationError('billing year and month must be integers')
    if not 1 <= month <= 12:
        raise ValidationError('billing month must be between 1 and 12')
    if year < MIN_BILLING_YEAR or year > 9999:
        raise ValidationError(f'billing year must be {MIN_BILLING_YEAR} or later')
    return year, month


def overlaps_month(start: date | None, end: date | None, month_start: date, month_end: date) -> bool:
    if start is None:
        return False
    return (
        (start <= month_end and (end is None or end >= month_start))
        or (month_start <= start <= month_end)
        or (end is None and start <= month_end)
    )


def prorate(start: date, end: date | None, year: int, month: int, calculation_end: date,
            monthly_fee: float = FIXED_MONTHLY_FEE) -> dict:
    """Days a membership was active in the month and the matching share of the fee.

    Both boundary days count. ``calculation_end`` is today for a month still in
    progress and the last day of the month otherwise.
    """
    month_start, _ = month_bounds(year, month)
    dim = days_in_month(year, month)
    active_start = max(start, month_start)
    active_end = min(end or calculation_end, calculation_end)
    if active_start > active_end:
        return {'days_active': 0, 'days_in_month': dim, 'pro_rated_amount': 0.0}
    days_active = min((active_end - active_start).days + 1, dim)
    return {
        'days_active': days_active,
        'days_in_month': dim,
        'pro_rated_amount': round2(monthly_fee * days_active / dim),
    }


def empty_breakdown() -> dict:
    return {t: {'count': 0, 'total_amount': 0.0, 'paid_amount': 0.0, 'pending_amount': 0.0}
            for t in BREAKDOWN_TYPES}


def build_breakdown(member_bills: list[dict], fully_paid: bool = False) -> dict:
    breakdown = empty_breakdown()
    for bill in member_bills:
        entry = breakdown.get(bill.get('membership_type'))
        if entry is None:
            continue
        amount = bill.get('pro_rated_amount') or 0.0
        entry['count'] += 1
        entry['total_amount'] = round2(entry['total_amount'] + amount)
        if fully_paid:
            entry['paid_amount'] = round2(entry['paid_amount'] + amount)
        else:
            entry['pending_amount'] = round2(entry['pending_amount'] + amount)
    return breakdown


def normalize_membership_type(value) -> str:
    """Unknown or missing membership types bill as basic."""
    return value if value in MEMBERSHIP_TYPES else 'basic'


def member_bill(member, proration: dict, monthly_fee: float) -> dict:
    return {
        'member_id': member.id,
        'member_name': member.name,
        'member_email': getattr(member, 'email', None) or '',
        'member_phone': getattr(member, 'phone', None) or '',
        'membership_type': normalize_membership_type(getattr(member, 'membership_type', None)),
        'notes': getattr(member, 'notes', None) or '',
        'days_active': proration['days_active'],
        'days_in_month': proration['days_in_month'],
        'original_monthly_fee': monthly_fee,
        'pro_rated_amount': proration['pro_rated_amount'],
    }


def calculate_billing(members, year: int, month: int, as_of: date | None = None,
                      monthly_fee: float = FIXED_MONTHLY_FEE) -> dict:
    """Pro-rated bill of one gym for (year, month).

    With ``as_of`` inside the billed month the bill is live and runs up to that
    day; otherwise (``as_of`` omitted or another month) the whole month is billed.
    ``members`` are objects with ``id``, ``name``, ``membership_type``,
    ``membership_start_date`` and ``membership_end_date``.
    """
    month_start, month_end = month_bounds(year, month)
    live = as_of is not None and is_current_month(year, month, as_of)
    calculation_end = as_of if live else month_end

    member_bills = []
    for member in members:
        start = _as_date(getattr(member, 'membership_start_date', None))
        end = _as_date(getattr(member, 'membership_end_date', None))
        if not overlaps_month(start, end, month_start, month_end):
            continue
        proration = prorate(start, end, year, month, calculation_end, monthly_fee)
        member_bills.append(member_bill(member, proration, monthly_fee))

    total = round2(sum(b['pro_rated_amount'] for b in member_bills))
    return {
        'billing_year': year,
        'billing_month': month,
        'is_real_time': live,
        'calculation_end_date': calculation_end,
        'member_bills': member_bills,
        'total_members': len(member_bills),
        'total_bill_amount': total,
        'billing_breakdown': build_breakdown(member_bills),
    }


def summarize_totals(member_bills: list[dict], payment_history: list[dict]) -> dict:
    """Totals and payment status of a stored record from its line items and payments."""
    total = round2(sum((b.get('pro_rated_amount') or 0.0) for b in member_bills))
    paid = round2(sum((p.get('amount') or 0.0) for p in payment_history))
    if not payment_history:
        status = 'sent'
    elif paid >= total:
        status = 'fully_paid'
    else:
        status = 'partially_paid'
    return {
        'total_members': len(member_bills),
        'total_bill_amount': total,
        'total_paid_amount': paid,
        'total_pending_amount': round2(max(0.0, total - paid)),
        'total_overdue_amount': 0.0,
        'billing_status': status,
        'billing_breakdown': build_breakdown(member_bills, fully_paid=status == 'fully_paid'),
    }


def is_overdue(payment_deadline, pending_amount: float, today: date) -> bool:
    deadline = _as_date(payment_deadline)
    return deadline is not None and today > deadline and pending_amount > 0


def full_payment_entry(amount: float, payment_method: str | None, transaction_id: str | None,
                       description: str | None, processed_by=None,
                       paid_at: datetime | None = None) -> dict:
    if payment_method is not None and not isinstance(payment_method, str):
        raise ValidationError('payment_method must be a string')
    method = (payment_method or 'cash').strip().lower()
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    paid_at = paid_at or datetime.utcnow()
    return {
        'payment_date': paid_at.isoformat(),
        'amount': round2(amount),
        'payment_method': method,
        'transaction_id': transaction_id or f"PAY_{int(paid_at.timestamp() * 1000)}",
        'description': description or '',
        'processed_by': None if processed_by is None else str(processed_by),
    }


def gym_code(gym_name: str | None) -> str:
    return (gym_name or '')[:3].upper() or 'GYM'


def current_billing_id(gym_name: str, year: int, month: int) -> str:
    return f"CURRENT-{gym_code(gym_name)}-{year}{month:02d}"


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """Razorpay checkout signature: hex HMAC-SHA256 of ``order_id|payment_id``."""
    if not (order_id and payment_id and signature and secret):
        return False
    digest = hmac.new(secret.encode('utf-8'), f"{order_id}|{payment_id}".encode('utf-8'),
                      hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature)
