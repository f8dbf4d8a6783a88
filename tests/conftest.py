"""
Fixtures communes : application sur SQLite en mémoire, données de référence,
fabriques d'utilisateurs / médecins et en-têtes JWT.
"""

import pytest
from flask import g
from flask.testing import FlaskClient
from werkzeug.security import generate_password_hash

from app import create_app
from auth import generate_token
from extensions import db as _db
from models import Doctor, DoctorAvailability, User
from seeds import seed_all


class IsolatedClient(FlaskClient):
    """Le contexte applicatif est partagé entre les requêtes du test : on oublie
    l'utilisateur mis en cache par Flask-Login avant chaque appel."""

    def open(self, *args, **kwargs):
        g.pop("_login_user", None)
        return super().open(*args, **kwargs)


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret",
        "JWT_SECRET_KEY": "test-jwt-secret",
        "EMAIL_ENABLED": False,
        "BRAND_NAME": "MediRDV",
        "APP_ENV": "testing",
    })
    app.test_client_class = IsolatedClient
    with app.app_context():
        _db.create_all()
        seed_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(role="patient", name=None, email=None, password="motdepasse123", status="active"):
        counter["n"] += 1
        user = User(
            name=name or f"{role.capitalize()} {counter['n']}",
            email=email or f"{role}{counter['n']}@example.com",
            role=role,
            status=status,
            phone="+33 6 12 34 56 78",
            password_hash=generate_password_hash(password),
        )
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture
def make_doctor(make_user):
    def _make(name="Dr Martin", availability=None):
        user = make_user("doctor", name=name)
        doctor = Doctor(user_id=user.id, languages=["fr"])
        _db.session.add(doctor)
        _db.session.commit()
        for day, (start, end) in (availability or {}).items():
            _db.session.add(DoctorAvailability(doctor_id=doctor.id, day_of_week=day,
                                               start_time=start, end_time=end))
        _db.session.commit()
        return doctor

    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        return {"Authorization": f"Bearer {generate_token(user)}"}

    return _headers


@pytest.fixture
def admin(make_user):
    return make_user("admin", name="Admin")


@pytest.fixture
def patient(make_user):
    return make_user("patient", name="Alice Patient")


@pytest.fixture
def doctor(make_doctor):
    return make_doctor(availability={"monday": ("09:00", "12:00")})
