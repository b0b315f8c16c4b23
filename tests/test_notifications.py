from datetime import datetime, timedelta

from models import db, Notification


def test_task_assignment_notifies_assignee(client, make_user, create_project, add_member, create_task):
    owner = make_user()
    dev = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev)
    create_task(owner, project_id, title='Ship it', assigned_to=dev['id'])

    count = client.get('/api/notifications/unread-count', headers=dev['headers']).get_json()['data']['count']
    # 加入專案 + 任務指派
    assert count == 2

    notes = client.get('/api/notifications?type=task', headers=dev['headers']).get_json()['data']
    assert notes[0]['title'] == 'New task assigned'
    assert notes[0]['related_entity_type'] == 'task'


def test_self_actions_do_not_notify(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    create_task(owner, project_id, assigned_to=owner['id'])

    count = client.get('/api/notifications/unread-count', headers=owner['headers']).get_json()['data']['count']
    assert count == 0


def test_mark_read_and_read_all(client, make_user):
    admin = make_user(role='admin')
    user = make_user()
    for i in range(3):
        client.post('/api/notifications', json={'user_id': user['id'], 'title': f'N{i}', 'message': 'hi'},
                    headers=admin['headers'])

    notes = client.get('/api/notifications', headers=user['headers']).get_json()['data']
    resp = client.patch(f'/api/notifications/{notes[0]["id"]}/read', headers=user['headers'])
    assert resp.get_json()['data']['is_read'] is True

    resp = client.patch('/api/notifications/read-all', headers=user['headers'])
    assert resp.get_json()['data']['updated'] == 2
    assert client.get('/api/notifications/unread-count', headers=user['headers']).get_json()['data']['count'] == 0


def test_cannot_read_other_users_notification(client, make_user):
    admin = make_user(role='admin')
    alice = make_user()
    bob = make_user()
    created = client.post('/api/notifications', json={'user_id': alice['id'], 'title': 'Hi', 'message': 'x'},
                          headers=admin['headers']).get_json()['data']

    assert client.get(f'/api/notifications/{created["id"]}', headers=bob['headers']).status_code == 404


def test_send_fans_out_to_each_user(client, make_user):
    admin = make_user(role='admin')
    users = [make_user() for _ in range(3)]

    resp = client.post('/api/notifications/send', headers=admin['headers'], json={
        'user_ids': [u['id'] for u in users],
        'title': 'Maintenance',
        'message': 'Tonight at 10pm'
    })
    assert resp.status_code == 201
    assert resp.get_json()['data']['sent'] == 3

    for user in users:
        notes = client.get('/api/notifications', headers=user['headers']).get_json()['data']
        assert [n['title'] for n in notes] == ['Maintenance']


def test_send_requires_admin_and_known_users(client, make_user):
    admin = make_user(role='admin')
    user = make_user()

    payload = {'user_ids': [user['id']], 'title': 'x', 'message': 'y'}
    assert client.post('/api/notifications/send', json=payload, headers=user['headers']).status_code == 403

    payload = {'user_ids': [user['id'], 'ghost'], 'title': 'x', 'message': 'y'}
    assert client.post('/api/notifications/send', json=payload, headers=admin['headers']).status_code == 400


def test_cleanup_removes_only_old_read_notifications(app, client, make_user):
    admin = make_user(role='admin')
    user = make_user()
    old = datetime.utcnow() - timedelta(days=45)

    with app.app_context():
        db.session.add_all([
            Notification(user_id=user['id'], title='old read', message='x', is_read=True, created_at=old),
            Notification(user_id=user['id'], title='old unread', message='x', is_read=False, created_at=old),
            Notification(user_id=user['id'], title='new read', message='x', is_read=True)
        ])
        db.session.commit()

    resp = client.delete('/api/notifications/cleanup', headers=admin['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['deleted'] == 1

    titles = {n['title'] for n in client.get('/api/notifications', headers=user['headers']).get_json()['data']}
    assert titles == {'old unread', 'new read'}


def test_settings_defaults_and_update(client, make_user):
    user = make_user()

    settings = client.get('/api/notifications/settings', headers=user['headers']).get_json()['data']
    assert settings['email_notifications'] is True

    resp = client.patch('/api/notifications/settings', json={'email_notifications': False},
                        headers=user['headers'])
    assert resp.status_code == 200

    settings = client.get('/api/notifications/settings', headers=user['headers']).get_json()['data']
    assert settings['email_notifications'] is False
    assert settings['push_notifications'] is False
