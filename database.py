"""
Database configuration and utilities
"""
import os
from datetime import timedelta
from flask import Flask
from models import (db, init_default_categories, Church, User, UserRole, Transaction,
                    ROLE_ADMIN)


def create_app(config_mode='development', config_overrides=None):
    """Create and configure Flask app"""
    app = Flask(__name__)

    # Database configuration
    if config_mode == 'production':
        # PostgreSQL for production
        database_url = os.environ.get('DATABASE_URL')
        if database_url:
            # Fix postgres:// to postgresql:// for SQLAlchemy
            if database_url.startswith('postgres://'):
                database_url = database_url.replace('postgres://', 'postgresql://', 1)
            app.config['SQLALCHEMY_DATABASE_URI'] = database_url
            print(f"🔗 Using PostgreSQL: {database_url[:50]}...")
        else:
            app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite:///church_treasury.db'
            print("🔗 Using SQLite fallback")
    elif config_mode == 'testing':
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
        app.config['TESTING'] = True
    else:
        # SQLite for development
        app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///church_treasury.db')

    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'change-me-in-production')
    app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(
        minutes=int(os.environ.get('SESSION_TIMEOUT_MINUTES', '480'))
    )
    app.config['TIMEZONE'] = os.environ.get('CHURCH_TIMEZONE', 'America/Sao_Paulo')
    app.config['GUARD_TIMEOUT_MS'] = int(os.environ.get('GUARD_TIMEOUT_MS', '5000'))
    app.config['OVERDUE_SWEEP_HOUR'] = int(os.environ.get('OVERDUE_SWEEP_HOUR', '6'))
    app.config['ENABLE_SCHEDULER'] = (
        config_mode != 'testing' and os.environ.get('ENABLE_SCHEDULER', '1') != '0'
    )
    app.config['GOOGLE_DRIVE_FILES_URL'] = os.environ.get(
        'GOOGLE_DRIVE_FILES_URL', 'https://www.googleapis.com/drive/v3/files'
    )
    app.config['GOOGLE_API_TIMEOUT'] = int(os.environ.get('GOOGLE_API_TIMEOUT', '10'))

    if config_overrides:
        app.config.update(config_overrides)

    # Initialize database
    db.init_app(app)

    return app


def init_database(app):
    """Initialize database tables"""
    with app.app_context():
        db.create_all()
        print("Database initialized successfully!")


def check_database_status(app=None):
    """Check current database status"""
    app = app or create_app()

    with app.app_context():
        try:
            print("📊 Database Status:")
            print(f"   Churches: {Church.query.count()}")
            print(f"   Users: {User.query.count()}")
            print(f"   Role assignments: {UserRole.query.count()}")
            print(f"   Transactions: {Transaction.query.count()}")
            return True

        except Exception as e:
            print(f"❌ Database error: {e}")
            return False


def create_admin_user(email, full_name, password, church_name, app=None):
    """Create a church and its first admin user"""
    app = app or create_app()

    with app.app_context():
        try:
            email = email.strip().lower()
            if User.query.filter_by(email=email).first():
                print(f"❌ User with email {email} already exists")
                return False

            church = Church.query.filter_by(name=church_name).first()
            if not church:
                church = Church(name=church_name)
                db.session.add(church)
                db.session.flush()

            user = User(email=email, full_name=full_name, church_id=church.id)
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            db.session.add(UserRole(user_id=user.id, role=ROLE_ADMIN))
            db.session.commit()

            init_default_categories(church)

            print(f"✅ Created admin user: {user.full_name} ({user.email}) for {church.name}")
            return True

        except Exception as e:
            print(f"❌ Failed to create user: {e}")
            db.session.rollback()
            return False


if __name__ == '__main__':
    import sys

    if len(sys.argv) > 1:
        command = sys.argv[1]

        if command == 'init':
            app = create_app()
            init_database(app)

        elif command == 'status':
            check_database_status()

        elif command == 'create-admin':
            if len(sys.argv) != 6:
                print("Usage: python database.py create-admin <email> <full_name> <password> <church_name>")
                sys.exit(1)

            email, full_name, password, church_name = sys.argv[2:6]
            create_admin_user(email, full_name, password, church_name)

        else:
            print("Available commands: init, status, create-admin")

    else:
        print("Usage: python database.py <command>")
        print("Commands:")
        print("  init          - Initialize database")
        print("  status        - Check database status")
        print("  create-admin  - Create a church and its admin user")
