"""
University Complaint Portal - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timezone
import pytest

# Set testing environment
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing-only-0123456789'
os.environ['PASSWORD_HASH_ROUNDS'] = '4'
os.environ['CHAT_INDEX_PROBE_SECONDS'] = '0.05'
os.environ['MAX_LOGIN_ATTEMPTS'] = '3'

from utils import firebase_config

# app.py initializes Firebase at import time
firebase_config._firebase_app = object()

from utils import chat_feed, chat_rooms, complaint_manager, portal_auth
from tests.mocks.fake_firebase import FakeAuth, FakeBucket, FakeFirestore

PROBE_INTERVAL = 0.05


@pytest.fixture
def fake_db(monkeypatch):
    """Fresh in-memory Firestore wired into every manager singleton"""
    db = FakeFirestore()
    monkeypatch.setattr(firebase_config, '_firestore_client', db)
    monkeypatch.setattr(complaint_manager, '_complaint_manager', None)
    monkeypatch.setattr(portal_auth, '_auth_system', None)
    monkeypatch.setattr(chat_rooms, '_room_manager', None)

    registry = chat_feed.ChatFeedRegistry(lambda: db, probe_interval=PROBE_INTERVAL)
    monkeypatch.setattr(chat_feed, '_feed_registry', registry)
    yield db
    registry.close_all()


@pytest.fixture
def fake_auth(monkeypatch):
    auth = FakeAuth()
    monkeypatch.setattr(portal_auth, 'firebase_auth', auth)
    return auth


@pytest.fixture
def fake_bucket(monkeypatch):
    bucket = FakeBucket()
    monkeypatch.setattr(firebase_config, '_storage_bucket', bucket)
    return bucket


def seed_user(db, uid, username, role, **extra):
    data = {
        'username': username,
        'role': role,
        'firstName': username.title(),
        'lastName': 'Tester',
        'department': 'Computer Science',
    }
    data.update(extra)
    db.seed('users', uid, data)
    return uid


def seed_complaint(db, complaint_id, user_id='student1', status='pending', assigned_to=None, **extra):
    created_at = extra.pop('createdAt', datetime(2024, 1, 1, tzinfo=timezone.utc))
    data = {
        'title': 'Broken projector',
        'category': 'facilities and infrastructure',
        'subcategory': 'Classroom conditions',
        'description': 'The projector in room 12 does not turn on.',
        'semester': '3',
        'department': 'Computer Science',
        'userId': user_id,
        'username': 'alice',
        'status': status,
        'createdAt': created_at,
        'updatedAt': extra.pop('updatedAt', created_at),
    }
    if assigned_to:
        data['assignedTo'] = assigned_to
    data.update(extra)
    db.seed('complaints', complaint_id, data)
    return complaint_id


@pytest.fixture
def users(fake_db):
    """A student, a faculty member and an admin"""
    seed_user(fake_db, 'student1', 'alice', 'student', program='BS')
    seed_user(fake_db, 'faculty1', 'bob', 'faculty')
    seed_user(fake_db, 'admin1', 'carol', 'admin')
    return {'student': 'student1', 'faculty': 'faculty1', 'admin': 'admin1'}


@pytest.fixture
def client(fake_db, fake_auth, fake_bucket):
    from app import app
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client


def login_as(client, user_id, username, role):
    """Put a logged-in user in the Flask session"""
    with client.session_transaction() as sess:
        sess['user_id'] = user_id
        sess['username'] = username
        sess['user_type'] = role
