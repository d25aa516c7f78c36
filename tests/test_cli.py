from datetime import date

import cli
from app import MonthlyBilling


def test_create_and_show(make_gym, make_member, capsys, tmp_path):
    gym = make_gym()
    make_member(gym, date(2023, 1, 1))
    assert cli.main(['create', '--gym', str(gym.id), '2024', '3']) == 0
    assert 'Created BILL-IRO-202403-' in capsys.readouterr().out

    out = tmp_path / 'bills.csv'
    assert cli.main(['show', '--gym', str(gym.id), '--out', str(out)]) == 0
    rows = out.read_text().strip().splitlines()
    assert rows[0].startswith('Billing ID,Year,Month')
    assert len(rows) == 2


def test_create_conflict_returns_error_code(make_gym, make_member, capsys):
    gym = make_gym()
    make_member(gym, date(2023, 1, 1))
    cli.main(['create', '--gym', str(gym.id), '2024', '3'])
    assert cli.main(['create', '--gym', str(gym.id), '2024', '3']) == 2
    assert 'Billing already exists for this month' in capsys.readouterr().out


def test_finalize_as_of(make_gym, make_member, capsys):
    gym = make_gym()
    make_member(gym, date(2023, 1, 1))
    assert cli.main(['finalize', '--as-of', '2024-04-01']) == 0
    assert 'March 2024: gyms=1 finalized=1 created=1' in capsys.readouterr().out
    record = MonthlyBilling.query.one()
    assert (record.billing_year, record.billing_month, record.is_finalized) == (2024, 3, True)


def test_backfill_rejects_future(ctx, capsys):
    assert cli.main(['backfill', '2999', '1']) == 2
    assert 'Backfill is only allowed for past months' in capsys.readouterr().out


def test_no_command_prints_help(ctx, capsys):
    assert cli.main([]) == 0
    assert 'usage' in capsys.readouterr().out
