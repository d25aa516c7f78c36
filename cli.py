
import argparse
from datetime import datetime

import pandas as pd

from app import (app, MonthlyBilling, get_gym, create_monthly_billing, finalize_previous_month,
                 backfill_month, _ensure_schema)
from billing import BillingError


def finalize(as_of=None):
    now = datetime.fromisoformat(as_of) if as_of else datetime.utcnow()
    result = finalize_previous_month(now)
    print_result(result)
    return result


def backfill(year, month):
    result = backfill_month(year, month)
    print_result(result)
    return result


def create(gym_id, year, month):
    record = create_monthly_billing(gym_id, year, month)
    print('Created', record.billing_id, 'members=', record.total_members, 'total=', record.total_bill_amount)
    return record


def show(gym_id, out=None):
    gym = get_gym(gym_id)
    rows = MonthlyBilling.query.filter_by(gym_id=gym.id).order_by(
        MonthlyBilling.billing_year.desc(), MonthlyBilling.billing_month.desc()
    ).all()
    df = pd.DataFrame([[r.billing_id, r.billing_year, r.billing_month, r.total_members, r.total_bill_amount,
                        r.total_paid_amount, r.billing_status, r.is_finalized] for r in rows],
                      columns=['Billing ID', 'Year', 'Month', 'Members', 'Total', 'Paid', 'Status', 'Finalized'])
    if out:
        df.to_csv(out, index=False)
        print('Exported to', out)
    else:
        print(gym.name)
        print(df.to_string(index=False) if not df.empty else 'No billing records')
    return df


def print_result(result):
    print(f"{result['month_name']} {result['year']}: gyms={result['total_gyms']} finalized={result['finalized_count']} "
          f"created={result['created_count']} already={result['already_finalized_count']} "
          f"skipped={result['skipped_count']} errors={result['error_count']}")
    for err in result['errors']:
        print('  error', err['gym_id'], err['gym_name'], err['error'])


def main(argv=None):
    parser = argparse.ArgumentParser(description='Monthly gym billing')
    sub = parser.add_subparsers(dest='cmd')
    f = sub.add_parser('finalize'); f.add_argument('--as-of', dest='as_of', help='YYYY-MM-DD, defaults to today')
    b = sub.add_parser('backfill'); b.add_argument('year', type=int); b.add_argument('month', type=int)
    c = sub.add_parser('create'); c.add_argument('--gym', type=int, required=True); c.add_argument('year', type=int); c.add_argument('month', type=int)
    s = sub.add_parser('show'); s.add_argument('--gym', type=int, required=True); s.add_argument('--out', default=None)
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 0
    with app.app_context():
        _ensure_schema()
        try:
            if args.cmd == 'finalize':
                result = finalize(args.as_of)
                return 1 if result['error_count'] else 0
            elif args.cmd == 'backfill':
                result = backfill(args.year, args.month)
                return 1 if result['error_count'] else 0
            elif args.cmd == 'create':
                create(args.gym, args.year, args.month)
            elif args.cmd == 'show':
                show(args.gym, args.out)
        except BillingError as e:
            print('Error:', e.message)
            return 2
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
