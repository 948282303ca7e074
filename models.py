"""
Database models for the Church Treasury System
"""
from datetime import datetime
import uuid
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

# Transaction status values as stored in the database
STATUS_PENDING = 'Pendente'
STATUS_PAID = 'Pago'
STATUS_OVERDUE = 'Vencido'
TRANSACTION_STATUSES = (STATUS_PENDING, STATUS_PAID, STATUS_OVERDUE)

# Transaction types
TYPE_REVENUE = 'Receita'
TYPE_EXPENSE = 'Despesa'
TRANSACTION_TYPES = (TYPE_REVENUE, TYPE_EXPENSE)

# Roles a user may hold (membership only, no hierarchy)
ROLE_ADMIN = 'admin'
ROLE_TREASURER = 'tesoureiro'
ROLE_PASTOR = 'pastor'
ROLE_LEADER = 'lider'
ROLE_USER = 'user'
APP_ROLES = (ROLE_ADMIN, ROLE_TREASURER, ROLE_PASTOR, ROLE_LEADER, ROLE_USER)


def _new_id():
    return str(uuid.uuid4())


class Church(db.Model):
    """A church is the tenant every financial record belongs to"""
    __tablename__ = 'churches'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(120), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Church {self.name}>'


class User(UserMixin, db.Model):
    """User accounts for authentication"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(120), nullable=False)
    church_id = db.Column(db.String(36), db.ForeignKey('churches.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    church = db.relationship('Church', backref=db.backref('users', lazy=True))

    def set_password(self, password):
        """Hash and set password"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Check if provided password matches hash"""
        return check_password_hash(self.password_hash, password)

    @property
    def first_name(self):
        return self.full_name.split()[0] if self.full_name else ''

    def __repr__(self):
        return f'<User {self.email}>'


class UserRole(db.Model):
    """(user, role) assignments; a user may hold several roles at once"""
    __tablename__ = 'user_roles'
    __table_args__ = (db.UniqueConstraint('user_id', 'role', name='uq_user_role'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False)
    assigned_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<UserRole {self.user_id}:{self.role}>'


class Category(db.Model):
    """Transaction categories (per church)"""
    __tablename__ = 'categories'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    church_id = db.Column(db.String(36), db.ForeignKey('churches.id'), nullable=False)
    name = db.Column(db.String(80), nullable=False)
    color = db.Column(db.String(20), nullable=True)

    def __repr__(self):
        return f'<Category {self.name}>'


class Ministry(db.Model):
    """Ministries a transaction can be attributed to"""
    __tablename__ = 'ministries'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    church_id = db.Column(db.String(36), db.ForeignKey('churches.id'), nullable=False)
    name = db.Column(db.String(80), nullable=False)

    def __repr__(self):
        return f'<Ministry {self.name}>'


class Transaction(db.Model):
    """Revenue and expense entries"""
    __tablename__ = 'transactions'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    church_id = db.Column(db.String(36), db.ForeignKey('churches.id'), nullable=False, index=True)
    description = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    type = db.Column(db.String(10), nullable=False)  # Receita or Despesa
    status = db.Column(db.String(10), nullable=False, default=STATUS_PENDING)  # Pendente, Pago, Vencido
    due_date = db.Column(db.Date, nullable=True)
    payment_date = db.Column(db.Date, nullable=True)
    category_id = db.Column(db.String(36), db.ForeignKey('categories.id'), nullable=True)
    ministry_id = db.Column(db.String(36), db.ForeignKey('ministries.id'), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    origin = db.Column(db.String(30), nullable=True)  # manual, import, sync
    installment_group_id = db.Column(db.String(36), nullable=True, index=True)
    installment_number = db.Column(db.Integer, nullable=True)
    total_installments = db.Column(db.Integer, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    category = db.relationship('Category', lazy='joined')
    ministry = db.relationship('Ministry', lazy='joined')

    def to_dict(self):
        """Serialize for JSON responses"""
        return {
            'id': self.id,
            'description': self.description,
            'amount': float(self.amount),
            'type': self.type,
            'status': self.status,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'church_id': self.church_id,
            'category_id': self.category_id,
            'ministry_id': self.ministry_id,
            'category_name': self.category.name if self.category else None,
            'ministry_name': self.ministry.name if self.ministry else None,
            'installment_number': self.installment_number,
            'total_installments': self.total_installments,
            'notes': self.notes,
            'origin': self.origin,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<Transaction {self.description}: {self.amount} ({self.status})>'


# Default categories created with every new church
DEFAULT_CATEGORIES = {
    'Dízimos': '#16a34a',
    'Ofertas': '#22c55e',
    'Manutenção': '#f97316',
    'Contas de Consumo': '#ef4444',
    'Missões': '#3b82f6',
}


def init_default_categories(church):
    """Create the default categories for a church if they are missing"""
    for name, color in DEFAULT_CATEGORIES.items():
        existing = Category.query.filter_by(church_id=church.id, name=name).first()
        if not existing:
            db.session.add(Category(church_id=church.id, name=name, color=color))

    db.session.commit()
