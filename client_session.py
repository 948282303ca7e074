"""
Per-browser-session state
Each logged-in browser session owns a query cache, the overdue sweep latch,
one realtime subscription for its church and its pending notifications.
A client session ends at logout, or once it has been idle for the session
lifetime.
"""
import logging
import threading
import time
import uuid

from flask import session, request, current_app
from flask_login import current_user

from notifications import ToastQueue, flash_pending
from overdue import AutoUpdateOverdue
from query_cache import QueryCache
from realtime import TransactionsRealtimeBridge

logger = logging.getLogger(__name__)

SESSION_KEY = 'client_session_id'

# Requests that never need the session's subscription or sweep
SKIP_SYNC_ENDPOINTS = ('auth.logout', 'static')


class ClientSession:
    """State shared by every request of one browser session"""

    def __init__(self, session_id, feed, user_id=None, now=None):
        self.id = session_id
        self.user_id = user_id
        self.last_seen = now
        self.cache = QueryCache()
        self.toasts = ToastQueue()
        self.overdue_sweep = AutoUpdateOverdue(self.cache)
        self.realtime = TransactionsRealtimeBridge(feed, self.cache, self.toasts)

    def sync(self, church_id, today=None):
        """Bring the session in line with the user's current church"""
        self.realtime.attach(church_id)
        self.overdue_sweep.run(church_id, today=today)

    def close(self):
        self.realtime.close()
        self.cache.clear()


class SessionRegistry:
    """Client sessions keyed by the id stored in the Flask session cookie.

    Sessions idle for longer than max_idle seconds are closed the next time
    the registry is used, so a browser that lost its cookie does not leave a
    live subscription behind.
    """

    def __init__(self, feed, max_idle=None, clock=time.monotonic):
        self.feed = feed
        self.max_idle = max_idle
        self.clock = clock
        self._sessions = {}
        self._lock = threading.Lock()

    def get_or_create(self, session_id, user_id=None):
        now = self.clock()
        stale = []
        with self._lock:
            stale.extend(self._pop_idle(now))
            client = self._sessions.get(session_id)
            if client is not None and client.user_id != user_id:
                # another user logged in on this browser without logging out
                stale.append(self._sessions.pop(session_id))
                client = None
            if client is None:
                client = ClientSession(session_id, self.feed, user_id=user_id, now=now)
                self._sessions[session_id] = client
                logger.info(f"Client session {session_id} started")
            client.last_seen = now
        self._close(stale)
        return client

    def get(self, session_id):
        with self._lock:
            return self._sessions.get(session_id)

    def discard(self, session_id):
        with self._lock:
            client = self._sessions.pop(session_id, None)
        if client is not None:
            self._close([client])
        return client

    def evict_idle(self):
        """Close every session idle for longer than max_idle; returns how many"""
        with self._lock:
            stale = self._pop_idle(self.clock())
        self._close(stale)
        return len(stale)

    def close_all(self):
        with self._lock:
            clients = list(self._sessions.values())
            self._sessions.clear()
        for client in clients:
            client.close()

    def _pop_idle(self, now):
        if self.max_idle is None:
            return []
        idle = [sid for sid, client in self._sessions.items()
                if now - client.last_seen > self.max_idle]
        return [self._sessions.pop(sid) for sid in idle]

    def _close(self, clients):
        for client in clients:
            client.close()
            logger.info(f"Client session {client.id} closed")

    def __len__(self):
        with self._lock:
            return len(self._sessions)


def init_client_sessions(app):
    lifetime = app.config.get('PERMANENT_SESSION_LIFETIME')
    max_idle = lifetime.total_seconds() if lifetime else None
    registry = SessionRegistry(app.extensions['change_feed'], max_idle=max_idle)
    app.extensions['client_sessions'] = registry

    @app.before_request
    def prepare_client_session():
        if request.method == 'OPTIONS' or request.endpoint in SKIP_SYNC_ENDPOINTS:
            return None
        if not current_user.is_authenticated:
            return None
        client = current_client_session()
        client.sync(current_user.church_id)
        flash_pending(client.toasts)
        return None

    return registry


def get_session_registry():
    return current_app.extensions['client_sessions']


def current_client_session():
    """ClientSession for the current request, created on first use"""
    session_id = session.get(SESSION_KEY)
    if not session_id:
        session_id = uuid.uuid4().hex
        session[SESSION_KEY] = session_id
    user_id = current_user.id if current_user.is_authenticated else None
    return get_session_registry().get_or_create(session_id, user_id=user_id)


def end_client_session():
    session_id = session.pop(SESSION_KEY, None)
    if session_id:
        get_session_registry().discard(session_id)
