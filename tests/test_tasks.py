def test_tasks_are_ordered_by_priority_then_due_date(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    create_task(owner, project_id, title='low', priority='low')
    create_task(owner, project_id, title='high later', priority='high', due_date='2026-12-20T00:00:00')
    create_task(owner, project_id, title='high no due', priority='high')
    create_task(owner, project_id, title='high sooner', priority='high', due_date='2026-12-01T00:00:00')
    create_task(owner, project_id, title='urgent', priority='urgent')

    resp = client.get(f'/api/tasks/project/{project_id}', headers=owner['headers'])
    titles = [t['title'] for t in resp.get_json()['data']]
    assert titles == ['urgent', 'high sooner', 'high later', 'high no due', 'low']


def test_assignee_must_be_project_member(client, make_user, create_project):
    owner = make_user()
    outsider = make_user()
    project_id = create_project(owner)

    resp = client.post('/api/tasks', headers=owner['headers'], json={
        'project_id': project_id,
        'title': 'Nope',
        'assigned_to': outsider['id']
    })
    assert resp.status_code == 400
    assert 'assigned_to' in resp.get_json()['details']


def test_milestone_must_belong_to_project(client, make_user, create_project):
    owner = make_user()
    project_a = create_project(owner, name='A')
    project_b = create_project(owner, name='B')
    milestone = client.post('/api/milestones', json={'project_id': project_b, 'name': 'M1'},
                            headers=owner['headers']).get_json()['data']

    resp = client.post('/api/tasks', headers=owner['headers'], json={
        'project_id': project_a,
        'title': 'Cross project',
        'milestone_id': milestone['id']
    })
    assert resp.status_code == 400


def test_only_assignee_or_manager_updates_status(client, make_user, create_project, add_member, create_task):
    owner = make_user()
    dev = make_user()
    other = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev, role='developer')
    add_member(owner, project_id, other, role='developer')
    task = create_task(owner, project_id, assigned_to=dev['id'])

    resp = client.patch(f'/api/tasks/{task["id"]}/status', json={'status': 'in_progress'},
                        headers=other['headers'])
    assert resp.status_code == 400

    resp = client.patch(f'/api/tasks/{task["id"]}/status', json={'status': 'in_progress'},
                        headers=dev['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['status'] == 'in_progress'

    # 建立者收到狀態變更通知
    notes = client.get('/api/notifications?type=task', headers=owner['headers']).get_json()['data']
    assert any(n['title'] == 'Task status updated' for n in notes)


def test_progress_must_be_between_0_and_100(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    task = create_task(owner, project_id)

    resp = client.patch(f'/api/tasks/{task["id"]}/progress', json={'progress_percentage': 150},
                        headers=owner['headers'])
    assert resp.status_code == 400

    resp = client.patch(f'/api/tasks/{task["id"]}/progress', json={'progress_percentage': 40},
                        headers=owner['headers'])
    assert resp.get_json()['data']['progress_percentage'] == 40


def test_my_assigned_tasks(client, make_user, create_project, add_member, create_task):
    owner = make_user()
    dev = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, dev)
    create_task(owner, project_id, title='Mine', assigned_to=dev['id'])
    create_task(owner, project_id, title='Not mine')

    resp = client.get('/api/tasks/user/assigned', headers=dev['headers'])
    data = resp.get_json()['data']
    assert [t['title'] for t in data] == ['Mine']
    assert data[0]['project_name'] == 'Website Redesign'


def test_delete_task_with_subtasks_is_blocked(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    parent = create_task(owner, project_id, title='Parent')
    child = create_task(owner, project_id, title='Child', parent_task_id=parent['id'])

    resp = client.delete(f'/api/tasks/{parent["id"]}', headers=owner['headers'])
    assert resp.status_code == 400

    assert client.delete(f'/api/tasks/{child["id"]}', headers=owner['headers']).status_code == 200
    assert client.delete(f'/api/tasks/{parent["id"]}', headers=owner['headers']).status_code == 200
    assert client.get(f'/api/tasks/{parent["id"]}', headers=owner['headers']).status_code == 404


def test_task_read_requires_membership_unless_admin(client, make_user, create_project, create_task):
    owner = make_user()
    outsider = make_user()
    admin = make_user(role='admin')
    task = create_task(owner, create_project(owner))

    resp = client.get(f'/api/tasks/{task["id"]}', headers=outsider['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Access denied to this project'

    resp = client.get(f'/api/tasks/{task["id"]}', headers=admin['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['id'] == task['id']
