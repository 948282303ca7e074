"""
Overdue and due-date derivation
Read-side queries treat a pending transaction whose due date has passed as
overdue even before the reconciliation sweep marks it 'Vencido'. The sweep
itself runs once per client session and daily from the scheduler.
"""

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo
from flask import current_app, has_app_context
from sqlalchemy import or_, and_
from models import db, Transaction, STATUS_PENDING, STATUS_OVERDUE
from query_cache import invalidate_all_transaction_queries
import threading
import logging

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'America/Sao_Paulo'
DEFAULT_ALERT_DAYS = 7


def local_today(tz_name=None):
    """Today's date in the church's timezone"""
    if tz_name is None and has_app_context():
        tz_name = current_app.config.get('TIMEZONE')
    return datetime.now(ZoneInfo(tz_name or DEFAULT_TIMEZONE)).date()


def _row(transaction):
    return {
        'id': transaction.id,
        'description': transaction.description,
        'amount': float(transaction.amount),
        'due_date': transaction.due_date.isoformat() if transaction.due_date else None,
        'type': transaction.type,
        'status': transaction.status,
        'category_name': transaction.category.name if transaction.category else None,
        'ministry_name': transaction.ministry.name if transaction.ministry else None,
    }


def get_overdue_transactions(church_id, today=None):
    """Overdue transactions for a church, oldest due date first.

    Includes every 'Vencido' row and every 'Pendente' row due before today,
    each with days_overdue (whole days, never negative).
    """
    if not church_id:
        return []
    today = today or local_today()

    transactions = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .filter(or_(
            Transaction.status == STATUS_OVERDUE,
            and_(Transaction.status == STATUS_PENDING, Transaction.due_date < today),
        ))
        .order_by(Transaction.due_date.asc().nulls_last())
        .all()
    )

    rows = []
    for transaction in transactions:
        row = _row(transaction)
        if transaction.due_date:
            row['days_overdue'] = max((today - transaction.due_date).days, 0)
        else:
            row['days_overdue'] = 0
        rows.append(row)
    return rows


def get_due_transaction_alerts(church_id, today=None, days_ahead=DEFAULT_ALERT_DAYS):
    """Pending transactions due within the next days_ahead days (inclusive)"""
    if not church_id:
        return []
    if days_ahead < 0:
        raise ValueError('days_ahead must not be negative')
    today = today or local_today()
    limit = today + timedelta(days=days_ahead)

    transactions = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .filter(Transaction.status == STATUS_PENDING)
        .filter(Transaction.due_date.isnot(None))
        .filter(Transaction.due_date >= today)
        .filter(Transaction.due_date <= limit)
        .order_by(Transaction.due_date.asc())
        .all()
    )

    rows = []
    for transaction in transactions:
        row = _row(transaction)
        row['daysRemaining'] = (transaction.due_date - today).days
        rows.append(row)
    return rows


def get_todays_due_transactions(church_id, today=None):
    """Pending transactions due today, largest amount first"""
    if not church_id:
        return []
    today = today or local_today()

    transactions = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .filter(Transaction.status == STATUS_PENDING)
        .filter(Transaction.due_date == today)
        .order_by(Transaction.amount.desc())
        .all()
    )
    return [_row(t) for t in transactions]


def check_and_update_overdue(church_id=None, today=None):
    """Batch reconciliation: mark stale pending transactions as overdue.

    Scoped to one church when church_id is given, otherwise every church.
    Idempotent. Rows are updated through the ORM so change listeners see them.
    """
    today = today or local_today()
    query = Transaction.query.filter(
        Transaction.status == STATUS_PENDING,
        Transaction.due_date < today,
    )
    if church_id:
        query = query.filter(Transaction.church_id == church_id)

    try:
        stale = query.all()
        for transaction in stale:
            transaction.status = STATUS_OVERDUE
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if stale:
        logger.info(f"{len(stale)} transactions updated to \"{STATUS_OVERDUE}\"")
    return {'updated_count': len(stale)}


class AutoUpdateOverdue:
    """Runs the reconciliation sweep at most once per church for a client session.

    The latch is set before the sweep starts, so requests arriving while it
    is in flight do not start another one. A call without a church does not
    consume the latch.
    """

    def __init__(self, cache, sweep=check_and_update_overdue):
        self.cache = cache
        self._sweep = sweep
        self._swept = set()
        self._lock = threading.Lock()

    def has_run(self, church_id):
        with self._lock:
            return church_id in self._swept

    def run(self, church_id, today=None):
        if not church_id:
            return None
        with self._lock:
            if church_id in self._swept:
                return None
            self._swept.add(church_id)

        logger.info("Updating overdue transactions...")
        try:
            result = self._sweep(church_id=church_id, today=today)
        except Exception:
            logger.exception("Failed to update overdue transactions")
            return None

        updated = (result or {}).get('updated_count') or 0
        if updated > 0:
            invalidate_all_transaction_queries(self.cache)
        return result


def schedule_overdue_sweep(app, scheduler):
    """Register the daily sweep over every church"""
    def sweep():
        with app.app_context():
            try:
                result = check_and_update_overdue()
                logger.info(f"Scheduled overdue sweep completed: {result}")
            except Exception:
                logger.exception("Scheduled overdue sweep failed")

    scheduler.add_job(
        func=sweep,
        trigger="cron",
        hour=app.config.get('OVERDUE_SWEEP_HOUR', 6),
        minute=0,
        id='daily_overdue_sweep',
        replace_existing=True,
    )
    return sweep
