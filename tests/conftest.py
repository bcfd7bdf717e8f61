import pytest
from flask import g

from app import create_app
from config import TestingConfig
from models import db, User, Patient, Doctor


@pytest.fixture
def app():
    app = create_app(TestingConfig)

    @app.before_request
    def forget_cached_user():
        # Requests reuse the fixture's app context, so flask.g outlives a request
        g.pop('_login_user', None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _create_user(username, role, password, full_name):
    user = User(username=username, role=role, full_name=full_name, is_active=True)
    user.email = f'{username}@example.com'
    user.set_password(password)
    db.session.add(user)
    db.session.flush()
    return user


@pytest.fixture
def make_patient(app):
    def factory(username='patient1', password='password123', full_name='Pat Patient', **profile):
        user = _create_user(username, 'patient', password, full_name)
        patient = Patient(
            user_id=user.id,
            full_name=full_name,
            age=profile.pop('age', 30),
            gender=profile.pop('gender', 'female'),
            contact_number=profile.pop('contact_number', '+15550001111'),
            **profile
        )
        db.session.add(patient)
        db.session.commit()
        return user.id, patient.id
    return factory


@pytest.fixture
def make_doctor(app):
    def factory(username='doctor1', password='password123', full_name='Dana Doctor', **profile):
        user = _create_user(username, 'doctor', password, full_name)
        doctor = Doctor(
            user_id=user.id,
            full_name=full_name,
            specialization=profile.pop('specialization', 'Psychiatrist'),
            license_number=profile.pop('license_number', f'LIC-{username}'),
            experience=profile.pop('experience', 5),
            consultation_fee=profile.pop('consultation_fee', 100.0),
            **profile
        )
        db.session.add(doctor)
        db.session.commit()
        return user.id, doctor.id
    return factory


def login(client, username, password='password123'):
    resp = client.post('/api/auth/login', json={'username': username, 'password': password})
    assert resp.status_code == 200, resp.get_json()
    return resp


@pytest.fixture
def login_as(app):
    """Return a fresh test client logged in as `username`."""
    def factory(username, password='password123'):
        c = app.test_client()
        login(c, username, password)
        return c
    return factory
