from datetime import datetime, timedelta

from conftest import ACCOUNTS, PASSWORD, login
from extensions import bcrypt, db
from models import ActivityLog, LoginAttempt, User


def test_login_and_me(app, users):
    client = app.test_client()

    response = login(client, 'STU-001')
    body = response.get_json()
    assert response.status_code == 200
    assert body['success'] is True
    assert body['data']['user']['role'] == 'student'
    assert body['message'] == 'Welcome back, Ana!'

    me = client.get('/auth/me').get_json()
    assert me['data']['user']['account_number'] == 'STU-001'


def test_login_is_logged(app, users):
    login(app.test_client(), 'TCH-001')
    with app.app_context():
        entry = ActivityLog.query.filter_by(activity_type='user_login').one()
        assert entry.user_id == users['teacher']
        assert entry.ip_address == '127.0.0.1'


def test_me_requires_login(app, users):
    response = app.test_client().get('/auth/me')
    assert response.status_code == 401
    assert response.get_json()['error'] == 'UNAUTHENTICATED'


def test_wrong_password(app, users):
    response = login(app.test_client(), 'STU-001', 'nope')
    assert response.status_code == 401
    assert response.get_json() == {
        'success': False,
        'error': 'UNAUTHENTICATED',
        'message': 'Invalid account number or password',
    }


def test_missing_credentials(app, users):
    response = app.test_client().post('/auth/login', json={'account_number': 'STU-001'})
    assert response.status_code == 400
    assert 'password' in response.get_json()['fields']


def test_archived_accounts_cannot_log_in(app, users):
    with app.app_context():
        db.session.get(User, users['student']).status = 'archived'
        db.session.commit()
    assert login(app.test_client(), 'STU-001').status_code == 401


def test_account_locks_after_repeated_failures(app, users):
    client = app.test_client()
    statuses = [login(client, 'STU-001', 'wrong').status_code
                for _ in range(app.config['LOGIN_MAX_ATTEMPTS'])]
    assert statuses == [401, 401, 401, 401, 429]

    # Even the right password is refused while locked
    response = login(client, 'STU-001', PASSWORD)
    assert response.status_code == 429
    body = response.get_json()
    assert body['error'] == 'ACCOUNT_LOCKED'
    assert 'locked_until' in body['fields']

    # Other accounts are unaffected
    assert login(app.test_client(), 'STU-002').status_code == 200


def test_lock_expires(app, users):
    client = app.test_client()
    for _ in range(app.config['LOGIN_MAX_ATTEMPTS']):
        login(client, 'stu-001 ', 'wrong')

    with app.app_context():
        attempt = LoginAttempt.query.filter_by(account_key='stu-001').one()
        attempt.locked_until = datetime.utcnow() - timedelta(seconds=1)
        db.session.commit()

    assert login(client, 'STU-001').status_code == 200


def test_success_clears_failures(app, users):
    client = app.test_client()
    for _ in range(app.config['LOGIN_MAX_ATTEMPTS'] - 1):
        login(client, 'STU-001', 'wrong')
    assert login(client, 'STU-001').status_code == 200

    with app.app_context():
        assert LoginAttempt.query.count() == 0

    assert login(app.test_client(), 'STU-001', 'wrong').status_code == 401


def test_logout(login_as):
    client = login_as('student')
    assert client.post('/auth/logout').status_code == 200
    assert client.get('/auth/me').status_code == 401


def test_create_admin_command(app, users):
    runner = app.test_cli_runner()
    result = runner.invoke(args=['create-admin', '--account-number', 'ADM-900',
                                 '--password', 'changeme1'])
    assert 'created' in result.output

    with app.app_context():
        admin = User.query.filter_by(account_number='ADM-900').one()
        assert admin.role == 'admin'
        assert bcrypt.check_password_hash(admin.password, 'changeme1')

    again = runner.invoke(args=['create-admin', '--account-number', ACCOUNTS['admin'],
                                '--password', 'changeme1'])
    assert 'already exists' in again.output
