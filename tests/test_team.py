def test_cannot_remove_last_project_manager(client, make_user, create_project):
    owner = make_user()
    project_id = create_project(owner)

    resp = client.delete(f'/api/team/projects/{project_id}/members/{owner["id"]}', headers=owner['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Cannot remove the last project manager'

    resp = client.put(f'/api/team/projects/{project_id}/members/{owner["id"]}',
                      json={'role': 'member'}, headers=owner['headers'])
    assert resp.status_code == 400


def test_second_manager_allows_removal(client, make_user, create_project, add_member):
    owner = make_user()
    other = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, other, role='project_manager')

    resp = client.delete(f'/api/team/projects/{project_id}/members/{owner["id"]}', headers=other['headers'])
    assert resp.status_code == 200

    members = client.get(f'/api/team/projects/{project_id}/members', headers=other['headers'])
    assert [m['id'] for m in members.get_json()['data']] == [other['id']]


def test_cannot_remove_member_with_active_tasks(client, make_user, create_project, add_member, create_task):
    owner = make_user()
    dev = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev, role='developer')
    task = create_task(owner, project_id, assigned_to=dev['id'])

    resp = client.delete(f'/api/team/projects/{project_id}/members/{dev["id"]}', headers=owner['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Cannot remove user with active assigned tasks. Please reassign tasks first.'

    client.patch(f'/api/tasks/{task["id"]}/status', json={'status': 'completed'}, headers=owner['headers'])
    resp = client.delete(f'/api/team/projects/{project_id}/members/{dev["id"]}', headers=owner['headers'])
    assert resp.status_code == 200


def test_duplicate_member_is_rejected(client, make_user, create_project, add_member):
    owner = make_user()
    dev = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev)

    resp = client.post(f'/api/team/projects/{project_id}/members',
                       json={'user_id': dev['id']}, headers=owner['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'User is already a member of this project'


def test_added_member_is_notified(client, make_user, create_project, add_member):
    owner = make_user()
    dev = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev)

    resp = client.get('/api/notifications', headers=dev['headers'])
    notifications = resp.get_json()['data']
    assert len(notifications) == 1
    assert notifications[0]['type'] == 'project'
    assert notifications[0]['sender']['id'] == owner['id']


def test_user_admin_routes_require_admin(client, make_user):
    user = make_user()
    admin = make_user(role='admin')

    payload = {'username': 'carol', 'email': 'carol@example.com', 'password': 'secret123', 'role': 'developer'}
    resp = client.post('/api/team/users', json=payload, headers=user['headers'])
    assert resp.status_code == 403

    resp = client.post('/api/team/users', json=payload, headers=admin['headers'])
    assert resp.status_code == 201
    assert resp.get_json()['data']['role'] == 'developer'


def test_cannot_delete_self(client, make_user):
    admin = make_user(role='admin')
    resp = client.delete(f'/api/team/users/{admin["id"]}', headers=admin['headers'])
    assert resp.status_code == 400


def test_current_user_role(client, make_user):
    admin = make_user(role='admin')
    resp = client.get('/api/team/current-user-role', headers=admin['headers'])
    assert resp.get_json()['data']['is_admin'] is True
