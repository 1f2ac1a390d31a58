from conftest import auth_headers
from models import db, User


def test_register_returns_token_and_user(client):
    resp = client.post('/api/auth/register', json={
        'email': '  Dana@Example.com ',
        'password': 'secret123',
        'name': 'Dana'
    })

    assert resp.status_code == 201
    body = resp.get_json()
    assert body['token']
    assert body['user']['email'] == 'dana@example.com'
    assert body['user']['name'] == 'Dana'
    assert 'password_hash' not in body['user']


def test_register_duplicate_email(client, alice):
    resp = client.post('/api/auth/register', json={
        'email': 'ALICE@example.com',
        'password': 'secret123',
        'name': 'Other Alice'
    })

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'User already exists'


def test_register_validation_errors(client):
    resp = client.post('/api/auth/register', json={
        'email': 'not-an-email',
        'password': '123',
        'name': ''
    })

    assert resp.status_code == 400
    body = resp.get_json()
    assert body['error'] == 'Validation failed'
    fields = {error['field'] for error in body['errors']}
    assert fields == {'email', 'password', 'name'}


def test_register_rejects_non_json_body(client):
    resp = client.post('/api/auth/register', data='email=a', content_type='application/json')

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Request body must be JSON'


def test_login_success_updates_last_login(client, app, alice):
    resp = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'secret123'
    })

    assert resp.status_code == 200
    assert resp.get_json()['user']['id'] == alice['id']

    with app.app_context():
        assert db.session.get(User, alice['id']).last_login is not None


def test_login_wrong_password(client, alice):
    resp = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'wrong-password'
    })

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Invalid credentials'


def test_login_unknown_email_same_message(client):
    resp = client.post('/api/auth/login', json={
        'email': 'nobody@example.com',
        'password': 'secret123'
    })

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Invalid credentials'


def test_login_disabled_account(client, app, alice):
    with app.app_context():
        db.session.get(User, alice['id']).is_active = False
        db.session.commit()

    resp = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'secret123'
    })

    assert resp.status_code == 403


def test_me_requires_token(client):
    resp = client.get('/api/auth/me')

    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'No token provided'}


def test_me_rejects_garbage_token(client):
    resp = client.get('/api/auth/me', headers=auth_headers('not.a.token'))

    assert resp.status_code == 401
    assert resp.get_json() == {'error': 'Invalid token'}


def test_me_returns_current_user(client, alice):
    resp = client.get('/api/auth/me', headers=alice['headers'])

    assert resp.status_code == 200
    body = resp.get_json()
    assert body['email'] == 'alice@example.com'
    assert body['created_at']


def test_update_profile(client, alice):
    resp = client.put('/api/auth/profile', json={
        'name': 'Alice Cooper',
        'avatar_url': 'https://cdn.example.com/alice.png'
    }, headers=alice['headers'])

    assert resp.status_code == 200
    body = resp.get_json()
    assert body['name'] == 'Alice Cooper'
    assert body['avatar_url'] == 'https://cdn.example.com/alice.png'


def test_update_profile_nothing_to_update(client, alice):
    resp = client.patch('/api/auth/profile', json={}, headers=alice['headers'])

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'No fields to update'


def test_update_profile_invalid_avatar(client, alice):
    resp = client.put('/api/auth/profile', json={'avatar_url': 'not a url'}, headers=alice['headers'])

    assert resp.status_code == 400
    assert resp.get_json()['errors'][0]['field'] == 'avatar_url'


def test_change_password(client, alice):
    resp = client.post('/api/auth/change-password', json={
        'current_password': 'secret123',
        'new_password': 'new-secret-456'
    }, headers=alice['headers'])
    assert resp.status_code == 200

    old_login = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'secret123'
    })
    new_login = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'new-secret-456'
    })
    assert old_login.status_code == 400
    assert new_login.status_code == 200


def test_change_password_wrong_current(client, alice):
    resp = client.post('/api/auth/change-password', json={
        'current_password': 'nope-nope',
        'new_password': 'new-secret-456'
    }, headers=alice['headers'])

    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Current password is incorrect'


def test_password_whitespace_is_kept_on_change(client, alice):
    resp = client.post('/api/auth/change-password', json={
        'current_password': 'secret123',
        'new_password': 'newpass1 '
    }, headers=alice['headers'])
    assert resp.status_code == 200

    exact = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'newpass1 '
    })
    trimmed = client.post('/api/auth/login', json={
        'email': 'alice@example.com',
        'password': 'newpass1'
    })
    assert exact.status_code == 200
    assert trimmed.status_code == 400


def test_password_whitespace_is_kept_on_register(client):
    resp = client.post('/api/auth/register', json={
        'email': 'erin@example.com',
        'password': ' abcdef ',
        'name': 'Erin'
    })
    assert resp.status_code == 201

    exact = client.post('/api/auth/login', json={'email': 'erin@example.com', 'password': ' abcdef '})
    trimmed = client.post('/api/auth/login', json={'email': 'erin@example.com', 'password': 'abcdef'})
    assert exact.status_code == 200
    assert trimmed.status_code == 400


def test_register_password_length_counts_spaces(client):
    resp = client.post('/api/auth/register', json={
        'email': 'finn@example.com',
        'password': '  abc  ',
        'name': 'Finn'
    })

    assert resp.status_code == 201
