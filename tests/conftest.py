"""
Pytest fixtures for the church treasury test suite.

Provides:
- An app built in testing mode on a throwaway SQLite file
- Factories for churches, users with roles and transactions
- A logged-in test client helper
"""

from datetime import date
from decimal import Decimal

import pytest

from app import build_app
from models import (db, Church, User, UserRole, Transaction, Category, Ministry,
                    STATUS_PENDING, TYPE_EXPENSE)

# Fixed reference date for query-level tests
TODAY = date(2024, 3, 10)

PASSWORD = 'senha-segura-123'


@pytest.fixture
def app(tmp_path):
    app = build_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'treasury.db'}",
        'SECRET_KEY': 'test-secret',
    })
    yield app
    app.extensions['client_sessions'].close_all()
    app.extensions['role_resolver'].shutdown()
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def ctx(app):
    """Run the test body inside an application context"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_church(app):
    def factory(name='Igreja Central'):
        with app.app_context():
            church = Church(name=name)
            db.session.add(church)
            db.session.commit()
            return church.id
    return factory


@pytest.fixture
def church_id(make_church):
    return make_church('Igreja Central')


@pytest.fixture
def other_church_id(make_church):
    return make_church('Igreja Batista do Bairro')


@pytest.fixture
def make_user(app):
    def factory(email, church_id=None, roles=(), password=PASSWORD, full_name='Maria Souza'):
        with app.app_context():
            user = User(email=email, full_name=full_name, church_id=church_id)
            user.set_password(password)
            db.session.add(user)
            db.session.flush()
            for role in roles:
                db.session.add(UserRole(user_id=user.id, role=role))
            db.session.commit()
            return user.id
    return factory


@pytest.fixture
def make_transaction(app):
    def factory(church_id, description='Conta de luz', amount='100.00', status=STATUS_PENDING,
                type=TYPE_EXPENSE, due_date=None, **fields):
        with app.app_context():
            transaction = Transaction(
                church_id=church_id,
                description=description,
                amount=Decimal(amount),
                status=status,
                type=type,
                due_date=due_date,
                **fields,
            )
            db.session.add(transaction)
            db.session.commit()
            return transaction.id
    return factory


@pytest.fixture
def make_category(app):
    def factory(church_id, name='Manutenção'):
        with app.app_context():
            category = Category(church_id=church_id, name=name)
            db.session.add(category)
            db.session.commit()
            return category.id
    return factory


@pytest.fixture
def make_ministry(app):
    def factory(church_id, name='Louvor'):
        with app.app_context():
            ministry = Ministry(church_id=church_id, name=name)
            db.session.add(ministry)
            db.session.commit()
            return ministry.id
    return factory


@pytest.fixture
def login(client):
    def do_login(email, password=PASSWORD):
        response = client.post('/auth/login', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response
    return do_login
