def test_create_project_makes_creator_project_manager(client, make_user, create_project):
    owner = make_user()
    project_id = create_project(owner)

    resp = client.get(f'/api/projects/{project_id}', headers=owner['headers'])
    assert resp.status_code == 200

    data = resp.get_json()['data']
    assert data['my_role'] == 'project_manager'
    assert [m['id'] for m in data['team_members']] == [owner['id']]
    assert data['tasks_summary']['total'] == 0
    assert data['progress_percentage'] == 0


def test_end_date_before_start_date_is_rejected(client, make_user):
    owner = make_user()
    resp = client.post('/api/projects', headers=owner['headers'], json={
        'name': 'Backwards',
        'start_date': '2026-05-10',
        'end_date': '2026-05-01'
    })
    assert resp.status_code == 400
    assert 'end_date' in resp.get_json()['details']


def test_project_list_pagination(client, make_user, create_project):
    owner = make_user()
    for i in range(15):
        create_project(owner, name=f'Project {i:02d}')

    resp = client.get('/api/projects?page=2&limit=10', headers=owner['headers'])
    assert resp.status_code == 200

    body = resp.get_json()
    assert len(body['data']) == 5
    assert body['pagination'] == {
        'currentPage': 2,
        'totalPages': 2,
        'totalItems': 15,
        'itemsPerPage': 10,
        'hasNext': False,
        'hasPrev': True
    }


def test_project_list_only_shows_member_projects(client, make_user, create_project):
    alice = make_user()
    bob = make_user()
    create_project(alice, name='Alice only')
    create_project(bob, name='Bob only')

    resp = client.get('/api/projects', headers=alice['headers'])
    names = [p['name'] for p in resp.get_json()['data']]
    assert names == ['Alice only']


def test_non_member_gets_access_denied(client, make_user, create_project):
    owner = make_user()
    outsider = make_user()
    project_id = create_project(owner)

    resp = client.get(f'/api/projects/{project_id}', headers=outsider['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Access denied to this project'


def test_admin_bypasses_membership(client, make_user, create_project):
    owner = make_user()
    admin = make_user(role='admin')
    project_id = create_project(owner)

    resp = client.get(f'/api/projects/{project_id}', headers=admin['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['my_role'] == 'admin'

    listing = client.get('/api/projects', headers=admin['headers'])
    assert listing.get_json()['pagination']['totalItems'] == 1


def test_missing_project_is_not_found(client, make_user):
    user = make_user()
    resp = client.get('/api/projects/does-not-exist', headers=user['headers'])
    assert resp.status_code == 404
    assert resp.get_json()['message'] == 'Project not found'


def test_only_managers_can_update_or_delete(client, make_user, create_project, add_member):
    owner = make_user()
    member = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, member)

    resp = client.patch(f'/api/projects/{project_id}', json={'name': 'Hijacked'}, headers=member['headers'])
    assert resp.status_code == 400

    resp = client.patch(f'/api/projects/{project_id}', json={'status': 'on_hold'}, headers=owner['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['status'] == 'on_hold'

    resp = client.delete(f'/api/projects/{project_id}', headers=member['headers'])
    assert resp.status_code == 400

    resp = client.delete(f'/api/projects/{project_id}', headers=owner['headers'])
    assert resp.status_code == 200
    assert client.get(f'/api/projects/{project_id}', headers=owner['headers']).status_code == 404


def test_project_stats(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    create_task(owner, project_id, title='One')
    done = create_task(owner, project_id, title='Two')
    client.patch(f'/api/tasks/{done["id"]}/status', json={'status': 'completed'}, headers=owner['headers'])

    resp = client.get(f'/api/projects/{project_id}/stats', headers=owner['headers'])
    stats = resp.get_json()['data']
    assert stats['totalTasks'] == 2
    assert stats['completedTasks'] == 1
    assert stats['teamSize'] == 1
    assert stats['totalHours'] == 0
