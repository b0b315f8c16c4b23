import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from config import TestingConfig
from models import db, User
from auth import hash_password
from access import assign_global_role


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """
    直接在資料庫建立使用者

    回傳 dict (id / email / username / headers),避免在測試裡拿到 detached 的 ORM 物件
    """
    counter = {'n': 0}

    def _make_user(username=None, role=None, password='secret123', is_active=True):
        counter['n'] += 1
        username = username or f'user{counter["n"]}'
        with app.app_context():
            user = User(
                username=username,
                email=f'{username}@example.com',
                first_name=username.title(),
                last_name='Tester',
                password_hash=hash_password(password),
                is_active=is_active
            )
            db.session.add(user)
            db.session.flush()
            if role:
                assign_global_role(user.id, role)
            db.session.commit()
            token = create_access_token(identity=user.id)
            return {
                'id': user.id,
                'email': user.email,
                'username': user.username,
                'headers': {'Authorization': f'Bearer {token}'}
            }

    return _make_user


@pytest.fixture
def create_project(client):
    def _create_project(user, name='Website Redesign', **fields):
        payload = {'name': name}
        payload.update(fields)
        resp = client.post('/api/projects', json=payload, headers=user['headers'])
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['data']['id']

    return _create_project


@pytest.fixture
def add_member(client):
    def _add_member(manager, project_id, user, role='member'):
        resp = client.post(f'/api/team/projects/{project_id}/members',
                           json={'user_id': user['id'], 'role': role},
                           headers=manager['headers'])
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['data']

    return _add_member


@pytest.fixture
def create_task(client):
    def _create_task(user, project_id, title='Write docs', **fields):
        payload = {'project_id': project_id, 'title': title}
        payload.update(fields)
        resp = client.post('/api/tasks', json=payload, headers=user['headers'])
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['data']

    return _create_task
