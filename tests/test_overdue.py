import threading
from datetime import date, timedelta
from unittest.mock import MagicMock

from conftest import TODAY
from models import db, Transaction, STATUS_PENDING, STATUS_PAID, STATUS_OVERDUE, TYPE_REVENUE
from overdue import (get_overdue_transactions, get_due_transaction_alerts,
                     get_todays_due_transactions, check_and_update_overdue, AutoUpdateOverdue,
                     schedule_overdue_sweep)
from query_cache import QueryCache, OVERDUE_TRANSACTIONS, TRANSACTIONS


def days(n):
    return TODAY + timedelta(days=n)


class TestOverdueTransactions:

    def test_stale_pending_row_is_overdue(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Aluguel', due_date=date(2024, 3, 5))
        rows = get_overdue_transactions(church_id, TODAY)
        assert len(rows) == 1
        assert rows[0]['description'] == 'Aluguel'
        assert rows[0]['days_overdue'] == 5

    def test_vencido_rows_are_included_regardless_of_due_date(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Futuro', status=STATUS_OVERDUE, due_date=days(3))
        make_transaction(church_id, 'Sem data', status=STATUS_OVERDUE)
        rows = get_overdue_transactions(church_id, TODAY)
        assert [r['description'] for r in rows] == ['Futuro', 'Sem data']
        assert all(r['days_overdue'] == 0 for r in rows)

    def test_excludes_current_paid_and_other_churches(self, ctx, make_transaction, church_id,
                                                       other_church_id):
        make_transaction(church_id, 'Hoje', due_date=TODAY)
        make_transaction(church_id, 'Paga', status=STATUS_PAID, due_date=days(-10))
        make_transaction(other_church_id, 'Outra igreja', due_date=days(-10))
        assert get_overdue_transactions(church_id, TODAY) == []

    def test_ordered_by_due_date(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Recente', due_date=days(-1))
        make_transaction(church_id, 'Antiga', status=STATUS_OVERDUE, due_date=days(-30))
        make_transaction(church_id, 'Meio', due_date=days(-7))
        rows = get_overdue_transactions(church_id, TODAY)
        assert [r['description'] for r in rows] == ['Antiga', 'Meio', 'Recente']
        assert [r['days_overdue'] for r in rows] == [30, 7, 1]

    def test_no_church_yields_empty_list(self, ctx):
        assert get_overdue_transactions(None, TODAY) == []
        assert get_due_transaction_alerts(None, TODAY) == []
        assert get_todays_due_transactions(None, TODAY) == []


class TestDueAlerts:

    def test_window_is_inclusive(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Hoje', due_date=TODAY)
        make_transaction(church_id, 'Em dois dias', due_date=date(2024, 3, 12))
        make_transaction(church_id, 'Limite', due_date=days(7))
        make_transaction(church_id, 'Fora', due_date=days(8))
        make_transaction(church_id, 'Atrasada', due_date=days(-1))
        make_transaction(church_id, 'Paga', status=STATUS_PAID, due_date=days(1))

        rows = get_due_transaction_alerts(church_id, TODAY, days_ahead=7)
        assert [(r['description'], r['daysRemaining']) for r in rows] == [
            ('Hoje', 0), ('Em dois dias', 2), ('Limite', 7),
        ]

    def test_custom_lookahead(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Em dois dias', due_date=days(2))
        assert get_due_transaction_alerts(church_id, TODAY, days_ahead=1) == []


class TestTodaysDue:

    def test_largest_amount_first(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Pequena', amount='50.00', due_date=TODAY)
        make_transaction(church_id, 'Grande', amount='900.00', due_date=TODAY)
        make_transaction(church_id, 'Amanhã', amount='999.00', due_date=days(1))
        make_transaction(church_id, 'Paga', amount='999.00', status=STATUS_PAID, due_date=TODAY)
        rows = get_todays_due_transactions(church_id, TODAY)
        assert [r['description'] for r in rows] == ['Grande', 'Pequena']
        assert rows[0]['amount'] == 900.0


class TestReconciliation:

    def test_marks_stale_pending_rows(self, ctx, make_transaction, church_id, other_church_id):
        stale = make_transaction(church_id, 'Aluguel', due_date=days(-2))
        current = make_transaction(church_id, 'Luz', due_date=TODAY)
        foreign = make_transaction(other_church_id, 'Água', due_date=days(-2))

        assert check_and_update_overdue(church_id, TODAY) == {'updated_count': 1}
        assert db.session.get(Transaction, stale).status == STATUS_OVERDUE
        assert db.session.get(Transaction, current).status == STATUS_PENDING
        assert db.session.get(Transaction, foreign).status == STATUS_PENDING

    def test_is_idempotent(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Aluguel', due_date=days(-2))
        assert check_and_update_overdue(church_id, TODAY)['updated_count'] == 1
        assert check_and_update_overdue(church_id, TODAY)['updated_count'] == 0

    def test_without_church_covers_every_church(self, ctx, make_transaction, church_id,
                                                 other_church_id):
        make_transaction(church_id, 'Aluguel', due_date=days(-2))
        make_transaction(other_church_id, 'Água', type=TYPE_REVENUE, due_date=days(-2))
        assert check_and_update_overdue(today=TODAY)['updated_count'] == 2

    def test_read_side_agrees_after_sweep(self, ctx, make_transaction, church_id):
        make_transaction(church_id, 'Aluguel', due_date=date(2024, 3, 5))
        before = get_overdue_transactions(church_id, TODAY)
        check_and_update_overdue(church_id, TODAY)
        after = get_overdue_transactions(church_id, TODAY)
        assert [r['id'] for r in before] == [r['id'] for r in after]
        assert after[0]['status'] == STATUS_OVERDUE
        assert after[0]['days_overdue'] == 5


class TestAutoUpdateOverdue:

    def test_runs_once_per_session(self):
        sweep = MagicMock(return_value={'updated_count': 0})
        latch = AutoUpdateOverdue(QueryCache(), sweep=sweep)
        latch.run('igreja-1')
        latch.run('igreja-1')
        sweep.assert_called_once_with(church_id='igreja-1', today=None)

    def test_waits_for_church(self):
        sweep = MagicMock(return_value={'updated_count': 0})
        latch = AutoUpdateOverdue(QueryCache(), sweep=sweep)
        assert latch.run(None) is None
        sweep.assert_not_called()
        latch.run('igreja-1')
        latch.run('igreja-1')
        assert sweep.call_count == 1
        assert latch.has_run('igreja-1')

    def test_invalidates_cache_when_rows_changed(self):
        cache = QueryCache()
        cache.fetch((OVERDUE_TRANSACTIONS, 'igreja-1'), lambda: ['stale'])
        cache.fetch(('user-roles', 1), lambda: ['admin'])
        latch = AutoUpdateOverdue(cache, sweep=lambda **kwargs: {'updated_count': 3})
        latch.run('igreja-1')
        assert (OVERDUE_TRANSACTIONS, 'igreja-1') not in cache
        assert ('user-roles', 1) in cache

    def test_keeps_cache_when_nothing_changed(self):
        cache = QueryCache()
        cache.fetch((TRANSACTIONS, 'igreja-1'), lambda: [])
        latch = AutoUpdateOverdue(cache, sweep=lambda **kwargs: {'updated_count': 0})
        latch.run('igreja-1')
        assert (TRANSACTIONS, 'igreja-1') in cache

    def test_failure_is_swallowed_and_not_retried(self, caplog):
        sweep = MagicMock(side_effect=RuntimeError('rpc failed'))
        latch = AutoUpdateOverdue(QueryCache(), sweep=sweep)
        assert latch.run('igreja-1') is None
        assert latch.run('igreja-1') is None
        assert sweep.call_count == 1
        assert 'Failed to update overdue transactions' in caplog.text

    def test_in_flight_sweep_is_not_started_twice(self):
        started, release = threading.Event(), threading.Event()
        calls = []

        def blocking_sweep(**kwargs):
            calls.append(kwargs)
            started.set()
            release.wait(5)
            return {'updated_count': 0}

        latch = AutoUpdateOverdue(QueryCache(), sweep=blocking_sweep)
        worker = threading.Thread(target=latch.run, args=('igreja-1',))
        worker.start()
        assert started.wait(5)

        assert latch.run('igreja-1') is None
        release.set()
        worker.join(5)
        assert len(calls) == 1


def test_scheduled_sweep_registers_daily_job(app, make_transaction, church_id):
    scheduler = MagicMock()
    sweep = schedule_overdue_sweep(app, scheduler)
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs['trigger'] == 'cron'
    assert kwargs['id'] == 'daily_overdue_sweep'

    make_transaction(church_id, 'Aluguel', due_date=date(2000, 1, 1))
    sweep()
    with app.app_context():
        assert Transaction.query.filter_by(status=STATUS_OVERDUE).count() == 1
