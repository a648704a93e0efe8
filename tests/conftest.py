import pytest

from app import create_app
from extensions import bcrypt, db, push
from models import User

PASSWORD = 'secret123'

ACCOUNTS = {
    'admin': 'ADM-001',
    'teacher': 'TCH-001',
    'adviser': 'TCH-002',
    'student': 'STU-001',
    'other_student': 'STU-002',
}


class FakeTransport:
    """Records push messages instead of calling a push service"""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, user_id, message):
        if self.fail:
            raise RuntimeError('push service down')
        self.sent.append((user_id, message))
        return {'sent': 1, 'failed': 0}

    def to(self, user_id):
        return [message for target, message in self.sent if target == user_id]


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def pushes(app):
    transport = FakeTransport()
    push.transport = transport
    return transport


@pytest.fixture
def users(app):
    """Seed one account per role; returns their ids"""
    with app.app_context():
        rows = {
            'admin': User(role='admin', first_name='Rosa', last_name='Reyes', gender='female'),
            'teacher': User(role='teacher', first_name='Maria', last_name='Santos', gender='female'),
            'adviser': User(role='teacher', first_name='Jose', last_name='Cruz', gender='male'),
            'student': User(role='student', first_name='Ana', last_name='Lopez', grade_level='10'),
            'other_student': User(role='student', first_name='Ben', last_name='Tan', grade_level='10'),
        }
        hashed = bcrypt.generate_password_hash(PASSWORD).decode('utf-8')
        for key, user in rows.items():
            user.account_number = ACCOUNTS[key]
            user.password = hashed
            db.session.add(user)
        db.session.commit()
        return {key: user.id for key, user in rows.items()}


@pytest.fixture
def ctx(app, users):
    """Application context for calling services directly"""
    with app.app_context():
        yield


@pytest.fixture
def admin(ctx, users):
    return db.session.get(User, users['admin'])


@pytest.fixture
def teacher(ctx, users):
    return db.session.get(User, users['teacher'])


@pytest.fixture
def adviser(ctx, users):
    return db.session.get(User, users['adviser'])


@pytest.fixture
def student(ctx, users):
    return db.session.get(User, users['student'])


@pytest.fixture
def other_student(ctx, users):
    return db.session.get(User, users['other_student'])


def login(client, account_number, password=PASSWORD):
    return client.post('/auth/login', json={'account_number': account_number, 'password': password})


@pytest.fixture
def login_as(app, users):
    """Returns a test client logged in with the given role's account"""
    def _login(role):
        client = app.test_client()
        response = login(client, ACCOUNTS[role])
        assert response.status_code == 200, response.get_json()
        return client
    return _login
