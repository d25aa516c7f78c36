import hashlib
import hmac
from datetime import date, datetime
from types import SimpleNamespace

import pytest

import billing
from billing import ValidationError


def member(mid=1, start=None, end=None, membership_type='basic', name='Test User'):
    return SimpleNamespace(id=mid, name=name, email='', phone='', notes='', membership_type=membership_type,
                           membership_start_date=start, membership_end_date=end)


def test_full_month_bills_the_fixed_fee():
    calc = billing.calculate_billing([member(start=date(2024, 1, 15))], 2024, 3)
    bill = calc['member_bills'][0]
    assert bill['days_active'] == 31
    assert bill['days_in_month'] == 31
    assert bill['pro_rated_amount'] == 41.67
    assert bill['original_monthly_fee'] == billing.FIXED_MONTHLY_FEE
    assert calc['is_real_time'] is False
    assert calc['calculation_end_date'] == date(2024, 3, 31)


def test_leap_february_full_month():
    calc = billing.calculate_billing([member(start=date(2023, 12, 1))], 2024, 2)
    assert calc['member_bills'][0]['days_active'] == 29
    assert calc['total_bill_amount'] == 41.67


def test_start_late_in_month_counts_both_boundary_days():
    calc = billing.calculate_billing([member(start=date(2024, 3, 30))], 2024, 3)
    bill = calc['member_bills'][0]
    assert bill['days_active'] == 2
    assert bill['pro_rated_amount'] == 2.69


def test_end_inside_month():
    calc = billing.calculate_billing([member(start=date(2023, 6, 1), end=date(2024, 3, 5))], 2024, 3)
    bill = calc['member_bills'][0]
    assert bill['days_active'] == 5
    assert bill['pro_rated_amount'] == 6.72


def test_members_outside_month_are_excluded():
    members = [
        member(1, start=date(2023, 1, 1), end=date(2024, 2, 28)),
        member(2, start=date(2024, 4, 1)),
        member(3, start=None),
        member(4, start=date(2024, 3, 31), end=date(2024, 3, 31)),
    ]
    calc = billing.calculate_billing(members, 2024, 3)
    assert [b['member_id'] for b in calc['member_bills']] == [4]
    assert calc['member_bills'][0]['days_active'] == 1


def test_live_month_runs_to_as_of():
    calc = billing.calculate_billing([member(start=date(2024, 2, 1))], 2024, 3, as_of=date(2024, 3, 10))
    assert calc['is_real_time'] is True
    assert calc['calculation_end_date'] == date(2024, 3, 10)
    assert calc['member_bills'][0]['days_active'] == 10
    assert calc['total_bill_amount'] == 13.44


def test_live_month_member_starting_after_today_bills_zero():
    calc = billing.calculate_billing([member(start=date(2024, 3, 20))], 2024, 3, as_of=date(2024, 3, 10))
    bill = calc['member_bills'][0]
    assert bill['days_active'] == 0
    assert bill['pro_rated_amount'] == 0.0


def test_as_of_in_another_month_bills_whole_month():
    calc = billing.calculate_billing([member(start=date(2024, 2, 1))], 2024, 3, as_of=date(2024, 5, 2))
    assert calc['is_real_time'] is False
    assert calc['member_bills'][0]['days_active'] == 31


def test_total_and_breakdown():
    members = [
        member(1, start=date(2024, 1, 1), membership_type='basic'),
        member(2, start=date(2024, 1, 1), membership_type='vip'),
        member(3, start=date(2024, 3, 30), membership_type='vip'),
        member(4, start=date(2024, 1, 1), membership_type='none'),
        member(5, start=date(2024, 1, 1), membership_type=None),
    ]
    calc = billing.calculate_billing(members, 2024, 3)
    assert calc['total_members'] == 5
    assert calc['total_bill_amount'] == billing.round2(41.67 * 4 + 2.69)
    breakdown = calc['billing_breakdown']
    assert breakdown['basic']['count'] == 2
    assert breakdown['vip'] == {'count': 2, 'total_amount': 44.36, 'paid_amount': 0.0, 'pending_amount': 44.36}
    assert breakdown['premium']['count'] == 0
    assert 'none' not in breakdown


def test_round2_rounds_half_up():
    assert billing.round2(0.125) == 0.13
    assert billing.round2(2.688387) == 2.69
    assert billing.round2(0) == 0.0


@pytest.mark.parametrize('payments,status,paid,pending', [
    ([], 'sent', 0.0, 83.34),
    ([{'amount': 83.34}], 'fully_paid', 83.34, 0.0),
    ([{'amount': 40.0}], 'partially_paid', 40.0, 43.34),
    ([{'amount': 100.0}], 'fully_paid', 100.0, 0.0),
])
def test_summarize_totals(payments, status, paid, pending):
    bills = [{'membership_type': 'basic', 'pro_rated_amount': 41.67},
             {'membership_type': 'premium', 'pro_rated_amount': 41.67}]
    totals = billing.summarize_totals(bills, payments)
    assert totals['billing_status'] == status
    assert totals['total_bill_amount'] == 83.34
    assert totals['total_paid_amount'] == paid
    assert totals['total_pending_amount'] == pending
    assert totals['total_overdue_amount'] == 0.0


def test_fully_paid_breakdown_moves_amounts_to_paid():
    bills = [{'membership_type': 'basic', 'pro_rated_amount': 41.67}]
    totals = billing.summarize_totals(bills, [{'amount': 41.67}])
    assert totals['billing_breakdown']['basic']['paid_amount'] == 41.67
    assert totals['billing_breakdown']['basic']['pending_amount'] == 0.0


def test_full_payment_entry_defaults():
    paid_at = datetime(2024, 4, 2, 10, 0, 0)
    entry = billing.full_payment_entry(41.67, None, None, 'Full payment', paid_at=paid_at)
    assert entry['payment_method'] == 'cash'
    assert entry['transaction_id'] == f"PAY_{int(paid_at.timestamp() * 1000)}"
    assert entry['payment_date'] == '2024-04-02T10:00:00'
    assert entry['processed_by'] is None


def test_full_payment_entry_rejects_unknown_method():
    with pytest.raises(ValidationError):
        billing.full_payment_entry(10, 'cheque', None, None)


@pytest.mark.parametrize('method', [5, ['cash'], {'type': 'upi'}])
def test_full_payment_entry_rejects_non_string_method(method):
    with pytest.raises(ValidationError):
        billing.full_payment_entry(10, method, None, None)


def test_unknown_membership_type_bills_as_basic():
    calc = billing.calculate_billing([member(start=date(2024, 1, 1), membership_type='gold')], 2024, 3)
    assert calc['member_bills'][0]['membership_type'] == 'basic'
    assert calc['billing_breakdown']['basic']['count'] == 1


@pytest.mark.parametrize('year,month', [(2024, 0), (2024, 13), (2019, 5), ('abc', 1), (None, 3)])
def test_validate_period_rejects(year, month):
    with pytest.raises(ValidationError):
        billing.validate_period(year, month)


def test_validate_period_coerces_strings():
    assert billing.validate_period('2024', '03') == (2024, 3)


def test_month_helpers():
    assert billing.previous_month(date(2024, 1, 15)) == (2023, 12)
    assert billing.previous_month(date(2024, 7, 1)) == (2024, 6)
    assert billing.months_back(date(2024, 1, 15), 3) == [(2023, 12), (2023, 11), (2023, 10)]
    assert billing.months_since(datetime(2023, 11, 20), date(2024, 2, 1)) == 3
    assert billing.is_future_month(2024, 4, date(2024, 3, 31))
    assert not billing.is_future_month(2024, 3, date(2024, 3, 31))
    assert billing.month_name(2) == 'February'


def test_gym_existed_in():
    created = datetime(2024, 3, 15, 12, 0)
    assert not billing.gym_existed_in(created, 2024, 2)
    assert billing.gym_existed_in(created, 2024, 3)
    assert billing.gym_existed_in(None, 2020, 1)


def test_is_overdue():
    assert billing.is_overdue(date(2024, 3, 31), 10.0, date(2024, 4, 1))
    assert not billing.is_overdue(date(2024, 3, 31), 10.0, date(2024, 3, 31))
    assert not billing.is_overdue(date(2024, 3, 31), 0.0, date(2024, 5, 1))


def test_billing_ids():
    assert billing.gym_code('Iron Temple') == 'IRO'
    assert billing.gym_code('') == 'GYM'
    assert billing.current_billing_id('fit zone', 2024, 3) == 'CURRENT-FIT-202403'


def test_verify_payment_signature():
    secret = 'rzp_secret'
    good = hmac.new(secret.encode(), b'order_1|pay_1', hashlib.sha256).hexdigest()
    assert billing.verify_payment_signature('order_1', 'pay_1', good, secret)
    assert not billing.verify_payment_signature('order_1', 'pay_2', good, secret)
    assert not billing.verify_payment_signature('order_1', 'pay_1', good, '')
