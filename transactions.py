"""
Transaction queries and JSON endpoints
Every query is scoped to one church; a missing church yields an empty result
rather than an error. Endpoints read through the client session's cache.
"""

from collections import OrderedDict
from datetime import datetime
from flask import Blueprint, request, jsonify
from flask_login import current_user
from dateutil.relativedelta import relativedelta
from models import (Transaction, STATUS_PENDING, STATUS_PAID, STATUS_OVERDUE,
                    TYPE_REVENUE, TYPE_EXPENSE)
from rbac import protected_route, admin_route
from client_session import current_client_session
from overdue import (get_overdue_transactions, get_due_transaction_alerts,
                     get_todays_due_transactions, local_today, DEFAULT_ALERT_DAYS)
import query_cache as keys
import re

transactions_bp = Blueprint('transactions', __name__, url_prefix='/api/transactions')

PERIOD_CURRENT_MONTH = 'mes-atual'
PERIOD_QUARTER = 'trimestre'
PERIOD_YEAR = 'ano'
ALL_MINISTRIES = 'todos'
ALL_STATUSES = 'todos-status'

STATUS_FILTERS = {
    'pendente': STATUS_PENDING,
    'pago': STATUS_PAID,
    'vencido': STATUS_OVERDUE,
}

_INSTALLMENT_SUFFIX = re.compile(r'\s*\(\d+/\d+\)$')


def list_transactions(church_id):
    """All transactions of a church, newest first"""
    if not church_id:
        return []
    transactions = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .order_by(Transaction.created_at.desc())
        .all()
    )
    return [t.to_dict() for t in transactions]


def empty_stats():
    return {
        'totalPayable': 0.0,
        'totalPaid': 0.0,
        'totalOverdue': 0.0,
        'balance': 0.0,
        # always 0, month-over-month trends are not computed
        'payableTrend': 0.0,
        'paidTrend': 0.0,
        'overdueTrend': 0.0,
    }


def transaction_stats(church_id, today=None):
    """Dashboard totals for a church"""
    stats = empty_stats()
    if not church_id:
        return stats
    today = today or local_today()

    transactions = Transaction.query.filter(Transaction.church_id == church_id).all()
    for t in transactions:
        amount = float(t.amount)
        if t.type == TYPE_REVENUE:
            stats['balance'] += amount
        else:
            stats['balance'] -= amount

        if t.type == TYPE_EXPENSE and t.status == STATUS_PENDING:
            stats['totalPayable'] += amount
            if t.due_date and t.due_date < today:
                stats['totalOverdue'] += amount
        elif t.type == TYPE_EXPENSE and t.status == STATUS_OVERDUE:
            stats['totalPayable'] += amount
            stats['totalOverdue'] += amount

        if t.status == STATUS_PAID:
            stats['totalPaid'] += amount

    return {name: round(value, 2) for name, value in stats.items()}


def period_start(period, today):
    """First day covered by a period filter, or None for no date filter"""
    if period == PERIOD_CURRENT_MONTH:
        return today.replace(day=1)
    if period == PERIOD_QUARTER:
        return today.replace(day=1) - relativedelta(months=3)
    if period == PERIOD_YEAR:
        return today.replace(month=1, day=1)
    return None


def filtered_transactions(church_id, period=None, ministry_id=ALL_MINISTRIES,
                          status=ALL_STATUSES, today=None):
    """Transactions narrowed by period, ministry and status"""
    if not church_id:
        return []
    today = today or local_today()

    query = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .order_by(Transaction.created_at.desc())
    )

    start = period_start(period, today)
    if start:
        query = query.filter(Transaction.created_at >= datetime.combine(start, datetime.min.time()))

    if ministry_id and ministry_id != ALL_MINISTRIES:
        query = query.filter(Transaction.ministry_id == ministry_id)

    if status and status != ALL_STATUSES:
        if status not in STATUS_FILTERS:
            raise ValueError(f"Unknown status filter: {status}")
        query = query.filter(Transaction.status == STATUS_FILTERS[status])

    return [t.to_dict() for t in query.all()]


def empty_installment_stats():
    return {
        'totalGroups': 0,
        'totalPendingAmount': 0.0,
        'totalPaidAmount': 0.0,
        'totalOverdueAmount': 0.0,
        'upcomingInstallments': [],
        'installmentGroups': [],
        'paidVsPendingStats': {'paid': 0, 'pending': 0, 'overdue': 0},
    }


def installment_stats(church_id, today=None):
    """Summary of installment plans (transactions sharing a group id)"""
    stats = empty_installment_stats()
    if not church_id:
        return stats
    today = today or local_today()

    transactions = (
        Transaction.query
        .filter(Transaction.church_id == church_id)
        .filter(Transaction.installment_group_id.isnot(None))
        .order_by(Transaction.due_date.asc())
        .all()
    )
    if not transactions:
        return stats

    groups = OrderedDict()
    for t in transactions:
        groups.setdefault(t.installment_group_id, []).append(t)

    counts = stats['paidVsPendingStats']
    for group_id, items in groups.items():
        group = {
            'installment_group_id': group_id,
            'description': _INSTALLMENT_SUFFIX.sub('', items[0].description),
            'total_amount': 0.0,
            'total_installments': len(items),
            'paid_installments': 0,
            'pending_installments': 0,
            'overdue_installments': 0,
            'next_due_date': None,
        }
        for t in items:
            amount = float(t.amount)
            group['total_amount'] += amount
            if t.status == STATUS_PAID:
                group['paid_installments'] += 1
                counts['paid'] += 1
                stats['totalPaidAmount'] += amount
            elif t.status == STATUS_OVERDUE or (t.due_date and t.due_date < today):
                group['overdue_installments'] += 1
                counts['overdue'] += 1
                stats['totalOverdueAmount'] += amount
            else:
                group['pending_installments'] += 1
                counts['pending'] += 1
                stats['totalPendingAmount'] += amount
                if group['next_due_date'] is None and t.due_date:
                    group['next_due_date'] = t.due_date.isoformat()

        due_dates = sorted(t.due_date for t in items if t.due_date)
        group['first_due_date'] = due_dates[0].isoformat() if due_dates else None
        group['last_due_date'] = due_dates[-1].isoformat() if due_dates else None
        group['total_amount'] = round(group['total_amount'], 2)
        stats['installmentGroups'].append(group)

    horizon = today + relativedelta(months=1)
    upcoming = [
        t for t in transactions
        if t.status == STATUS_PENDING and t.due_date and today < t.due_date < horizon
    ]
    stats['upcomingInstallments'] = [
        {
            'id': t.id,
            'description': t.description,
            'amount': float(t.amount),
            'due_date': t.due_date.isoformat(),
            'installment_number': t.installment_number or 1,
            'total_installments': t.total_installments or 1,
            'status': t.status,
        }
        for t in upcoming[:10]
    ]

    stats['totalGroups'] = len(groups)
    for name in ('totalPendingAmount', 'totalPaidAmount', 'totalOverdueAmount'):
        stats[name] = round(stats[name], 2)
    return stats


# Cached readers used by the endpoints and the dashboards

def cached_overdue(client, church_id):
    return client.cache.fetch((keys.OVERDUE_TRANSACTIONS, church_id),
                              lambda: get_overdue_transactions(church_id, local_today()))


def cached_todays_due(client, church_id):
    return client.cache.fetch((keys.TODAYS_DUE_TRANSACTIONS, church_id),
                              lambda: get_todays_due_transactions(church_id, local_today()))


def cached_due_alerts(client, church_id, days_ahead=DEFAULT_ALERT_DAYS):
    return client.cache.fetch((keys.DUE_TRANSACTION_ALERTS, church_id, days_ahead),
                              lambda: get_due_transaction_alerts(church_id, local_today(), days_ahead))


def cached_stats(client, church_id):
    return client.cache.fetch((keys.TRANSACTION_STATS, church_id),
                              lambda: transaction_stats(church_id, local_today()))


def cached_installment_stats(client, church_id):
    return client.cache.fetch((keys.INSTALLMENT_STATS, church_id),
                              lambda: installment_stats(church_id, local_today()))


@transactions_bp.route('/')
@protected_route
def index():
    """All transactions of the user's church"""
    church_id = current_user.church_id
    client = current_client_session()
    data = client.cache.fetch((keys.TRANSACTIONS, church_id), lambda: list_transactions(church_id))
    return jsonify({'transactions': data})


@transactions_bp.route('/filtered')
@protected_route
def filtered():
    """Transactions filtered by period, ministry and status"""
    church_id = current_user.church_id
    if not church_id:
        return jsonify({'error': 'User not authenticated'}), 400

    period = request.args.get('period', PERIOD_CURRENT_MONTH)
    ministry_id = request.args.get('ministry', ALL_MINISTRIES)
    status = request.args.get('status', ALL_STATUSES)
    if status != ALL_STATUSES and status not in STATUS_FILTERS:
        return jsonify({'error': f'Unknown status filter: {status}'}), 400

    client = current_client_session()
    data = client.cache.fetch(
        (keys.FILTERED_TRANSACTIONS, church_id, period, ministry_id, status),
        lambda: filtered_transactions(church_id, period, ministry_id, status, local_today()),
    )
    return jsonify({'transactions': data})


@transactions_bp.route('/overdue')
@protected_route
def overdue():
    client = current_client_session()
    return jsonify({'transactions': cached_overdue(client, current_user.church_id)})


@transactions_bp.route('/due-today')
@protected_route
def due_today():
    client = current_client_session()
    return jsonify({'transactions': cached_todays_due(client, current_user.church_id)})


@transactions_bp.route('/alerts')
@protected_route
def alerts():
    """Pending transactions due within ?days= (default 7)"""
    days_ahead = request.args.get('days', DEFAULT_ALERT_DAYS, type=int)
    if days_ahead is None or days_ahead < 0:
        return jsonify({'error': 'days must be a non-negative integer'}), 400
    client = current_client_session()
    return jsonify({'transactions': cached_due_alerts(client, current_user.church_id, days_ahead)})


@transactions_bp.route('/stats')
@admin_route
def stats():
    client = current_client_session()
    return jsonify(cached_stats(client, current_user.church_id))


@transactions_bp.route('/installments')
@admin_route
def installments():
    client = current_client_session()
    return jsonify(cached_installment_stats(client, current_user.church_id))
