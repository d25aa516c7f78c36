import os
from datetime import datetime

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['FLASK_SECURE_COOKIES'] = '0'
os.environ['AUTO_FINALIZE_ENABLED'] = '0'
os.environ['RAZORPAY_KEY_SECRET'] = 'test_razorpay_secret'

import pytest
from werkzeug.security import generate_password_hash

from app import app, db, billing_cache, Gym, Member, User


@pytest.fixture
def ctx():
    app.config['TESTING'] = True
    # schema is created per test below; skip the admin seed and scheduler
    app.config['BOOTSTRAPPED'] = True
    app.config['RAZORPAY_KEY_SECRET'] = os.environ['RAZORPAY_KEY_SECRET']
    with app.app_context():
        db.drop_all()
        db.create_all()
        billing_cache().invalidate()
        yield
        db.session.remove()


@pytest.fixture
def make_gym(ctx):
    def _make(name='Iron Temple', created_at=datetime(2023, 1, 1), **kwargs):
        gym = Gym(name=name, created_at=created_at, **kwargs)
        db.session.add(gym)
        db.session.commit()
        return gym
    return _make


@pytest.fixture
def make_member(ctx):
    def _make(gym, start, end=None, membership_type='basic', name='Member'):
        m = Member(gym_id=gym.id, name=name, membership_type=membership_type,
                   membership_start_date=start, membership_end_date=end, phone='03001234567')
        db.session.add(m)
        db.session.commit()
        return m
    return _make


@pytest.fixture
def client(ctx):
    return app.test_client()


@pytest.fixture
def admin_client(client):
    admin = User(username='admin', password_hash=generate_password_hash('secret'), role='admin')
    db.session.add(admin)
    db.session.commit()
    with client.session_transaction() as sess:
        sess['user_id'] = admin.id
        sess['username'] = 'admin'
    return client


@pytest.fixture
def gym_client_for(ctx):
    def _login(gym):
        c = app.test_client()
        with c.session_transaction() as sess:
            sess['gym_id'] = gym.id
        return c
    return _login
