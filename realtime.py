"""
Realtime change notifications
Transaction inserts, updates and deletes are published to a per-app change
feed once their database transaction commits. Client sessions subscribe per
church and invalidate their cached queries when something changes.
"""

from dataclasses import dataclass, field
from itertools import count
from flask import current_app, has_app_context
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session
from models import Transaction
from notifications import NEW_TRANSACTION_MESSAGE, REMOVED_TRANSACTION_MESSAGE
from query_cache import invalidate_all_transaction_queries
import threading
import logging

logger = logging.getLogger(__name__)

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'
ALL_EVENTS = frozenset((INSERT, UPDATE, DELETE))

TRANSACTIONS_TABLE = Transaction.__tablename__

_PENDING_KEY = 'pending_changes'


@dataclass(frozen=True)
class ChangeEvent:
    event_type: str
    table: str
    church_id: str
    record: dict = field(default_factory=dict)


@dataclass(eq=False)
class Subscription:
    id: int
    church_id: str
    table: str
    events: frozenset
    callback: object
    active: bool = True

    def matches(self, change):
        return (
            self.active
            and change.church_id == self.church_id
            and change.table == self.table
            and change.event_type in self.events
        )


class ChangeFeed:
    """In-process publish/subscribe hub scoped by church and table"""

    def __init__(self):
        self._subscriptions = {}
        self._ids = count(1)
        self._lock = threading.Lock()

    def subscribe(self, church_id, table, callback, events=ALL_EVENTS):
        if not church_id:
            raise ValueError('church_id is required to subscribe')
        events = frozenset(events)
        unknown = events - ALL_EVENTS
        if unknown:
            raise ValueError(f"Unknown event types: {sorted(unknown)}")

        with self._lock:
            subscription = Subscription(next(self._ids), church_id, table, events, callback)
            self._subscriptions[subscription.id] = subscription
        logger.info(f"Subscribed #{subscription.id} to {table} changes for church {church_id}")
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            removed = self._subscriptions.pop(subscription.id, None)
            subscription.active = False
        if removed:
            logger.info(f"Unsubscribed #{subscription.id} from {subscription.table} changes")
        return removed is not None

    def subscriber_count(self, church_id=None):
        with self._lock:
            if church_id is None:
                return len(self._subscriptions)
            return sum(1 for s in self._subscriptions.values() if s.church_id == church_id)

    def publish(self, table, event_type, record):
        """Deliver a change to every matching subscription.

        Returns the number of callbacks invoked. A failing callback is logged
        and does not stop delivery to the others.
        """
        change = ChangeEvent(event_type, table, record.get('church_id'), dict(record))
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(change)]

        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(change)
                delivered += 1
            except Exception:
                logger.exception(f"Change callback #{subscription.id} failed for {event_type} on {table}")
        return delivered


def init_realtime(app):
    """Attach a change feed to the app and make sure ORM listeners are registered"""
    feed = ChangeFeed()
    app.extensions['change_feed'] = feed
    register_change_listeners()
    return feed


def get_change_feed():
    return current_app.extensions['change_feed']


# ORM wiring

_NEW_KEY = 'pending_new_objects'
_tracked_tables = {}


def _table_of(obj):
    return _tracked_tables.get(type(obj))


def _snapshot(target):
    mapper = inspect(target).mapper
    return {attr.key: getattr(target, attr.key) for attr in mapper.column_attrs}


def _collect_changes(session, flush_context, instances):
    # dirty and deleted rows are read before the flush while they still exist
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.dirty:
        table = _table_of(obj)
        if table and session.is_modified(obj, include_collections=False):
            pending.append((table, UPDATE, _snapshot(obj)))
    for obj in session.deleted:
        table = _table_of(obj)
        if table:
            pending.append((table, DELETE, _snapshot(obj)))
    session.info[_NEW_KEY] = [obj for obj in session.new if _table_of(obj)]


def _collect_inserts(session, flush_context):
    new_objects = session.info.pop(_NEW_KEY, None)
    if not new_objects:
        return
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in new_objects:
        pending.append((_table_of(obj), INSERT, _snapshot(obj)))


def _publish_pending(session):
    pending = session.info.pop(_PENDING_KEY, None)
    if not pending or not has_app_context():
        return
    feed = current_app.extensions.get('change_feed')
    if feed is None:
        return
    for table, event_type, record in pending:
        feed.publish(table, event_type, record)


def _discard_pending(session):
    session.info.pop(_PENDING_KEY, None)
    session.info.pop(_NEW_KEY, None)


def register_change_listeners(model=Transaction):
    """Track model changes and publish them on commit; safe to call repeatedly"""
    _tracked_tables[model] = model.__tablename__

    for name, listener in (('before_flush', _collect_changes),
                           ('after_flush', _collect_inserts),
                           ('after_commit', _publish_pending),
                           ('after_rollback', _discard_pending)):
        if not event.contains(Session, name, listener):
            event.listen(Session, name, listener)


class TransactionsRealtimeBridge:
    """Keeps one transactions subscription for the current church.

    Every change invalidates the transaction queries in the cache. Inserts and
    deletes also queue a toast; updates are silent.
    """

    def __init__(self, feed, cache, toasts):
        self.feed = feed
        self.cache = cache
        self.toasts = toasts
        self._subscription = None
        self._lock = threading.Lock()

    @property
    def church_id(self):
        subscription = self._subscription
        return subscription.church_id if subscription else None

    @property
    def is_subscribed(self):
        return self._subscription is not None

    def attach(self, church_id):
        """Subscribe to church_id, replacing any subscription to another church"""
        with self._lock:
            current = self._subscription
            if current is not None and current.church_id == church_id:
                return current
            self._teardown()
            if not church_id:
                return None
            try:
                self._subscription = self.feed.subscribe(church_id, TRANSACTIONS_TABLE, self._on_change)
            except Exception:
                logger.exception(f"Failed to subscribe to transaction changes for church {church_id}")
                self._subscription = None
            return self._subscription

    def close(self):
        with self._lock:
            self._teardown()

    def _teardown(self):
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None

    def _on_change(self, change):
        subscription = self._subscription
        if subscription is None or change.church_id != subscription.church_id:
            return

        logger.info(f"Transaction change detected: {change.event_type}")
        invalidate_all_transaction_queries(self.cache)

        if change.event_type == INSERT:
            self.toasts.info(NEW_TRANSACTION_MESSAGE)
        elif change.event_type == DELETE:
            self.toasts.info(REMOVED_TRANSACTION_MESSAGE)
