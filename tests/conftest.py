import itertools
import os
import tempfile
from decimal import Decimal

# Config refuses to load without a secret; loggers write under LOG_DIR
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="bizpoints-logs-"))

import pytest
from flask import g

from app import create_app
from config import TestingConfig
from extensions import db
from models import User, Role, Voucher, SubscriptionPackage


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    """Log a user in for the test client through the Flask-Login session key."""
    def _login(user):
        with client.session_transaction() as session:
            session["_user_id"] = str(user.id)
            session["_fresh"] = True
        # Flask-Login caches the loaded user on g for the app context
        g.pop("_login_user", None)
        return client
    return _login


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(role=Role.CUSTOMER, parent=None, commission_rate=None, name=None, **fields):
        n = next(counter)
        user = User(
            name=name or f"{role.value.title()} {n}",
            email=f"user{n}@example.com",
            role=role,
            dealer_code=f"D{n:04d}" if role.is_dealer else None,
            commission_rate=commission_rate,
            **fields
        )
        if parent is not None:
            user.assign_parent(parent)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def chain(make_user):
    """OWNER > ADMIN > EMPLOYEE > SUBDEALER > CUSTOMER, all on default rates."""
    owner = make_user(Role.OWNER)
    admin = make_user(Role.ADMIN, parent=owner)
    employee = make_user(Role.EMPLOYEE, parent=admin)
    subdealer = make_user(Role.SUBDEALER, parent=employee)
    customer = make_user(Role.CUSTOMER, parent=subdealer)
    return {
        "owner": owner,
        "admin": admin,
        "employee": employee,
        "subdealer": subdealer,
        "customer": customer,
    }


@pytest.fixture
def make_package(app):
    counter = itertools.count(1)

    def _make(name=None, price="499.00", duration_days=30, message_limit=1000, is_active=True):
        package = SubscriptionPackage(
            name=name or f"Package {next(counter)}",
            price=Decimal(price),
            duration_days=duration_days,
            message_limit=message_limit,
            is_active=is_active,
        )
        db.session.add(package)
        db.session.commit()
        return package

    return _make


@pytest.fixture
def make_voucher(app):
    def _make(code, type="credit", value="50.00", **fields):
        fields.setdefault("usage_count", 0)
        fields.setdefault("is_active", True)
        fields.setdefault("allow_dealer_redemption", False)
        voucher = Voucher(code=code, type=type, value=Decimal(str(value)), **fields)
        db.session.add(voucher)
        db.session.commit()
        return voucher

    return _make
