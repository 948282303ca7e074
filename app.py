"""
Church Treasury web application
"""
from flask import jsonify, redirect, url_for, get_flashed_messages
from flask_login import current_user
from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
import atexit
import logging
import os

from database import create_app
from models import db
from auth import init_auth
from rbac import init_rbac, protected_route, admin_route, current_role_state
from realtime import init_realtime
from client_session import init_client_sessions, current_client_session
from transactions import (transactions_bp, cached_overdue, cached_todays_due,
                          cached_due_alerts, cached_stats, cached_installment_stats)
from integrations import integrations_bp
from overdue import schedule_overdue_sweep

load_dotenv()

logger = logging.getLogger(__name__)


def build_app(config_mode=None, config_overrides=None):
    """Create the app with every extension and blueprint wired in"""
    if config_mode is None:
        config_mode = 'production' if os.environ.get('FLASK_ENV') == 'production' else 'development'

    app = create_app(config_mode, config_overrides)

    init_realtime(app)
    init_rbac(app)
    init_auth(app)
    init_client_sessions(app)

    app.register_blueprint(transactions_bp)
    app.register_blueprint(integrations_bp)
    register_routes(app)

    with app.app_context():
        db.create_all()

    if app.config.get('ENABLE_SCHEDULER'):
        start_scheduler(app)

    return app


def start_scheduler(app):
    """Start the background scheduler running the daily overdue sweep"""
    try:
        scheduler = BackgroundScheduler(timezone=app.config.get('TIMEZONE'))
        schedule_overdue_sweep(app, scheduler)
        scheduler.start()
        app.extensions['scheduler'] = scheduler
        atexit.register(lambda: scheduler.shutdown(wait=False))
        logger.info("Background scheduler started")
        return scheduler
    except Exception as e:
        logger.error(f"Scheduler failed to start: {e} (continuing without scheduler)")
        return None


def register_routes(app):

    @app.route('/')
    def index():
        if current_user.is_authenticated:
            return redirect(url_for('dashboard'))
        return redirect(url_for('auth.login'))

    @app.route('/dashboard')
    @protected_route
    def dashboard():
        """Overdue, due today and upcoming transactions for the user's church"""
        church_id = current_user.church_id
        client = current_client_session()
        roles = current_role_state()
        return jsonify({
            'church_id': church_id,
            'roles': sorted(roles.roles),
            'overdue': cached_overdue(client, church_id),
            'due_today': cached_todays_due(client, church_id),
            'due_soon': cached_due_alerts(client, church_id),
            'notifications': [
                {'category': category, 'message': message}
                for category, message in get_flashed_messages(with_categories=True)
            ],
        })

    @app.route('/admin')
    @admin_route
    def admin_dashboard():
        """Financial totals, restricted to admins and treasurers"""
        church_id = current_user.church_id
        client = current_client_session()
        return jsonify({
            'church_id': church_id,
            'stats': cached_stats(client, church_id),
            'installments': cached_installment_stats(client, church_id),
        })
