from models import db, User


def register(client, **overrides):
    payload = {
        'email': 'alice@example.com',
        'username': 'alice',
        'password': 'secret123',
        'first_name': 'Alice',
        'last_name': 'Liddell'
    }
    payload.update(overrides)
    return client.post('/api/auth/register', json=payload)


def test_register_returns_tokens(client):
    resp = register(client)
    assert resp.status_code == 201

    body = resp.get_json()
    assert body['success'] is True
    assert body['data']['token']
    assert body['data']['refresh_token']
    assert body['data']['user']['role'] == 'user'
    assert 'password_hash' not in body['data']['user']


def test_register_duplicate_email_conflicts(client):
    register(client)
    resp = register(client, username='alice2')
    assert resp.status_code == 409
    assert resp.get_json()['message'] == 'Email already exists'


def test_register_validation_errors(client):
    resp = register(client, email='not-an-email', password='123')
    assert resp.status_code == 400

    body = resp.get_json()
    assert body['success'] is False
    assert 'email' in body['details']
    assert 'password' in body['details']


def test_login_and_me(client):
    register(client)

    resp = client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'secret123'})
    assert resp.status_code == 200
    token = resp.get_json()['data']['token']

    me = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
    assert me.status_code == 200
    assert me.get_json()['data']['username'] == 'alice'


def test_login_with_wrong_password(client):
    register(client)
    resp = client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'wrong-pass'})
    assert resp.status_code == 401
    assert resp.get_json()['message'] == 'Invalid credentials'


def test_missing_token_is_unauthorized(client):
    resp = client.get('/api/auth/me')
    assert resp.status_code == 401
    assert resp.get_json()['message'] == 'Access token required'


def test_deactivated_user_token_is_rejected(app, client, make_user):
    user = make_user()
    with app.app_context():
        db.session.get(User, user['id']).is_active = False
        db.session.commit()

    resp = client.get('/api/auth/me', headers=user['headers'])
    assert resp.status_code == 401


def test_change_password(client, make_user):
    user = make_user()

    bad = client.post('/api/auth/change-password',
                      json={'current_password': 'nope', 'new_password': 'another123'},
                      headers=user['headers'])
    assert bad.status_code == 400

    ok = client.post('/api/auth/change-password',
                     json={'current_password': 'secret123', 'new_password': 'another123'},
                     headers=user['headers'])
    assert ok.status_code == 200

    login = client.post('/api/auth/login', json={'email': user['email'], 'password': 'another123'})
    assert login.status_code == 200
