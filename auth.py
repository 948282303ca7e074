"""
Authentication and User Management
"""
from flask import Blueprint, request, redirect, url_for, flash, jsonify, get_flashed_messages
from flask_login import LoginManager, login_user, logout_user, current_user
from models import db, User
from rbac import current_role_state, protected_route
from client_session import end_client_session
import logging

logger = logging.getLogger(__name__)

# Create authentication blueprint
auth_bp = Blueprint('auth', __name__, url_prefix='/auth')

# Initialize Flask-Login
login_manager = LoginManager()
login_manager.login_view = 'auth.login'
login_manager.login_message = 'Faça login para acessar esta página.'
login_manager.login_message_category = 'info'


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID for Flask-Login"""
    return db.session.get(User, int(user_id))


def init_auth(app):
    """Initialize authentication system with Flask app"""
    login_manager.init_app(app)
    app.register_blueprint(auth_bp)


def _credentials():
    if request.is_json:
        data = request.get_json(silent=True) or {}
    else:
        data = request.form
    return (data.get('email') or '').strip().lower(), data.get('password') or ''


def _login_failed(message):
    if request.is_json:
        return jsonify({'error': message}), 401
    flash(message, 'error')
    return redirect(url_for('auth.login'))


@auth_bp.route('/login', methods=['GET', 'POST'])
def login():
    """User login"""
    if request.method == 'GET':
        if current_user.is_authenticated:
            return redirect(url_for('dashboard'))
        return jsonify({
            'fields': ['email', 'password'],
            'messages': [
                {'category': category, 'message': message}
                for category, message in get_flashed_messages(with_categories=True)
            ],
        })

    email, password = _credentials()
    if not email or not password:
        return _login_failed('Informe email e senha.')

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password):
        logger.info(f"Failed login attempt for {email}")
        return _login_failed('Email ou senha inválidos.')

    end_client_session()
    login_user(user, remember=True)
    logger.info(f"User {user.id} logged in")

    if request.is_json:
        return jsonify({'user': {'id': user.id, 'email': user.email, 'church_id': user.church_id}})

    flash(f'Bem-vindo, {user.first_name}!', 'success')
    next_page = request.args.get('next')
    if next_page and next_page.startswith('/') and not next_page.startswith('//'):
        return redirect(next_page)
    return redirect(url_for('dashboard'))


@auth_bp.route('/logout', methods=['GET', 'POST'])
def logout():
    """Log out and drop the client session state"""
    end_client_session()
    logout_user()
    flash('Você saiu da sua conta.', 'info')
    return redirect(url_for('auth.login'))


@auth_bp.route('/me')
@protected_route
def me():
    """Identity, church and resolved roles of the current user"""
    state = current_role_state()
    return jsonify({
        'id': current_user.id,
        'email': current_user.email,
        'full_name': current_user.full_name,
        'church_id': current_user.church_id,
        **state.to_dict(),
    })
