"""
Role-Based Access Control
Resolves the current user's roles and guards routes that require a session
or a particular role. Guards are re-evaluated on every request.
"""
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from functools import wraps
import logging
import time

from flask import flash, redirect, url_for, request, jsonify, current_app
from flask_login import current_user

from models import UserRole, ROLE_ADMIN, ROLE_TREASURER, ROLE_PASTOR, ROLE_LEADER

logger = logging.getLogger(__name__)

# Longest time a guarded request waits for role resolution
GUARD_TIMEOUT_MS = 5000

PRIVILEGED_ROLES = (ROLE_ADMIN, ROLE_TREASURER, ROLE_PASTOR, ROLE_LEADER)

LOGIN_ENDPOINT = 'auth.login'
DASHBOARD_ENDPOINT = 'dashboard'

NO_SESSION_MESSAGE = 'Faça login para acessar esta página.'
FORBIDDEN_MESSAGE = 'Você não tem permissão para acessar esta página.'
TIMEOUT_MESSAGE = 'Tempo esgotado ao verificar suas permissões. Faça login novamente.'


@dataclass(frozen=True)
class RoleState:
    """Resolved role set for the current user"""
    roles: frozenset = frozenset()
    is_loading: bool = False

    def has_role(self, role):
        return role in self.roles

    def has_any_role(self, roles):
        return any(self.has_role(role) for role in roles)

    @property
    def is_admin(self):
        return self.has_role(ROLE_ADMIN)

    @property
    def is_tesoureiro(self):
        return self.has_role(ROLE_TREASURER)

    @property
    def is_pastor(self):
        return self.has_role(ROLE_PASTOR)

    @property
    def is_lider(self):
        return self.has_role(ROLE_LEADER)

    @property
    def is_privileged(self):
        return self.has_any_role(PRIVILEGED_ROLES)

    def to_dict(self):
        return {'roles': sorted(self.roles), 'is_loading': self.is_loading}


ANONYMOUS = RoleState()
PENDING = RoleState(is_loading=True)


def fetch_user_roles(user_id):
    """Load a user's roles; any failure is logged and yields no roles"""
    try:
        assignments = UserRole.query.filter_by(user_id=user_id).all()
    except Exception:
        logger.exception(f"Error fetching user roles for user {user_id}")
        return frozenset()
    return frozenset(assignment.role for assignment in assignments)


class RoleResolver:
    """Fetches role sets on a worker pool so callers can bound the wait"""

    def __init__(self, app, loader=fetch_user_roles, max_workers=4):
        self.app = app
        self.loader = loader
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='role-resolver')

    def start(self, user_id):
        """Begin resolving roles for user_id; None for anonymous users"""
        if user_id is None:
            return None
        app = self.app
        loader = self.loader

        def task():
            with app.app_context():
                return loader(user_id)

        return self.executor.submit(task)

    @staticmethod
    def state(future):
        """Snapshot of a resolution started with start()"""
        if future is None:
            return ANONYMOUS
        if future.cancelled() or not future.done():
            return PENDING
        error = future.exception()
        if error is not None:
            logger.error(f"Role resolution failed: {error}")
            return RoleState(frozenset())
        return RoleState(frozenset(future.result()))

    def resolve(self, user_id, timeout_ms):
        """Resolve roles, waiting at most timeout_ms; returns PENDING on timeout.

        A lookup that timed out before a worker picked it up is cancelled so
        it does not hold up later requests.
        """
        future = self.start(user_id)
        if future is None:
            return ANONYMOUS
        done, _ = wait([future], timeout=max(timeout_ms, 0) / 1000.0)
        if not done:
            future.cancel()
            logger.warning(f"Role resolution for user {user_id} timed out after {timeout_ms} ms")
            return PENDING
        return self.state(future)

    def shutdown(self):
        self.executor.shutdown(wait=False, cancel_futures=True)


def init_rbac(app, loader=fetch_user_roles):
    resolver = RoleResolver(app, loader=loader)
    app.extensions['role_resolver'] = resolver
    return resolver


def get_role_resolver():
    return current_app.extensions['role_resolver']


def guard_timeout_ms():
    return current_app.config.get('GUARD_TIMEOUT_MS', GUARD_TIMEOUT_MS)


def current_role_state():
    """Role state of current_user, bounded by the guard timeout"""
    if not current_user.is_authenticated:
        return ANONYMOUS
    return get_role_resolver().resolve(current_user.id, guard_timeout_ms())


def has_role(role):
    return current_role_state().has_role(role)


def has_any_role(roles):
    return current_role_state().has_any_role(roles)


# Route guard

class GuardState(Enum):
    LOADING = 'loading'
    AUTHORIZED = 'authorized'
    REDIRECTED = 'redirected'


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    redirect_to: str = None
    message: str = None
    reason: str = None


def evaluate_guard(is_authenticated, role_state, elapsed_ms, predicate=None,
                   auth_loading=False, timeout_ms=GUARD_TIMEOUT_MS):
    """Decide what a guarded route shows.

    Loading lasts while authentication or (for role-gated routes) role
    resolution is pending, but never past timeout_ms; after that the guard
    redirects to login even though nothing failed.
    """
    waiting_on_roles = is_authenticated and predicate is not None and role_state.is_loading
    if auth_loading or waiting_on_roles:
        if elapsed_ms >= timeout_ms:
            return GuardDecision(GuardState.REDIRECTED, LOGIN_ENDPOINT, TIMEOUT_MESSAGE, 'timeout')
        return GuardDecision(GuardState.LOADING)

    if not is_authenticated:
        return GuardDecision(GuardState.REDIRECTED, LOGIN_ENDPOINT, NO_SESSION_MESSAGE, 'no_session')

    if predicate is not None and not predicate(role_state):
        return GuardDecision(GuardState.REDIRECTED, DASHBOARD_ENDPOINT, FORBIDDEN_MESSAGE, 'forbidden')

    return GuardDecision(GuardState.AUTHORIZED)


def _wants_json():
    if request.is_json or request.path.startswith('/api/'):
        return True
    best = request.accept_mimetypes.best
    return best == 'application/json'


def _deny(decision):
    """Surface the denial once and send the user to the fallback route"""
    logger.info(f"Access to {request.path} denied ({decision.reason})")
    if decision.redirect_to == LOGIN_ENDPOINT:
        target = url_for(LOGIN_ENDPOINT, next=request.path)
    else:
        target = url_for(decision.redirect_to)

    if _wants_json():
        status = 403 if decision.reason == 'forbidden' else 401
        return jsonify({'error': decision.message, 'redirect': target}), status

    flash(decision.message, 'error' if decision.reason == 'forbidden' else 'warning')
    return redirect(target)


def guard_route(predicate=None):
    """Decorator running the route guard; predicate receives the RoleState"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            started = time.monotonic()
            timeout_ms = guard_timeout_ms()
            is_authenticated = current_user.is_authenticated

            role_state = ANONYMOUS
            if is_authenticated and predicate is not None:
                role_state = get_role_resolver().resolve(current_user.id, timeout_ms)

            elapsed_ms = (time.monotonic() - started) * 1000
            if role_state.is_loading:
                # the wait only ends early when resolution finished
                elapsed_ms = max(elapsed_ms, timeout_ms)

            decision = evaluate_guard(is_authenticated, role_state, elapsed_ms,
                                      predicate=predicate, timeout_ms=timeout_ms)
            if decision.state is GuardState.AUTHORIZED:
                return f(*args, **kwargs)
            return _deny(decision)
        return decorated_function
    return decorator


def protected_route(f):
    """Require a logged-in session"""
    return guard_route()(f)


def role_required(*roles):
    """Require a session and any one of the given roles"""
    if not roles:
        raise ValueError('role_required needs at least one role')
    return guard_route(lambda state: state.has_any_role(roles))


# Only admins and treasurers reach the administrative pages
admin_route = role_required(ROLE_ADMIN, ROLE_TREASURER)
