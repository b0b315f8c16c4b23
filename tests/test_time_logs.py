from datetime import date, timedelta


def log_time(client, user, **payload):
    return client.post('/api/time-logs', json=payload, headers=user['headers'])


def test_hours_must_be_positive(client, make_user, create_project, create_task):
    owner = make_user()
    task = create_task(owner, create_project(owner))

    resp = log_time(client, owner, task_id=task['id'], hours_spent=0)
    assert resp.status_code == 400
    assert resp.get_json()['details']['hours_spent'] == ['Hours spent must be greater than 0']

    resp = log_time(client, owner, task_id=task['id'], hours_spent=-2)
    assert resp.status_code == 400


def test_cannot_log_future_dates(client, make_user, create_project, create_task):
    owner = make_user()
    task = create_task(owner, create_project(owner))

    tomorrow = (date.today() + timedelta(days=1)).isoformat()
    resp = log_time(client, owner, task_id=task['id'], hours_spent=1, date=tomorrow)
    assert resp.status_code == 400
    assert resp.get_json()['details']['date'] == ['Cannot log time for future dates']


def test_project_is_taken_from_task(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    task = create_task(owner, project_id)

    resp = log_time(client, owner, task_id=task['id'], hours_spent=1.5)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['project_id'] == project_id
    assert data['task_title'] == task['title']


def test_non_member_cannot_log_on_project_task(client, make_user, create_project, create_task):
    owner = make_user()
    outsider = make_user()
    task = create_task(owner, create_project(owner))

    resp = log_time(client, outsider, task_id=task['id'], hours_spent=1)
    assert resp.status_code == 400


def test_summary_and_categories(client, make_user, create_project, create_task):
    owner = make_user()
    project_id = create_project(owner)
    task = create_task(owner, project_id)
    log_time(client, owner, task_id=task['id'], hours_spent=2, is_billable=True)
    log_time(client, owner, project_id=project_id, hours_spent=1)
    log_time(client, owner, project_id=project_id, hours_spent=0.5)

    summary = client.get('/api/time-logs/summary', headers=owner['headers']).get_json()['data']
    assert summary['total_hours'] == 3.5
    assert summary['billable_hours'] == 2
    assert summary['non_billable_hours'] == 1.5
    assert summary['total_entries'] == 3

    categories = client.get('/api/time-logs/categories', headers=owner['headers']).get_json()['data']
    assert [c['category'] for c in categories] == ['Task', 'Project']


def test_other_users_time_logs_need_admin(client, make_user):
    alice = make_user()
    bob = make_user()
    admin = make_user(role='admin')

    assert client.get(f'/api/time-logs/user/{bob["id"]}', headers=alice['headers']).status_code == 403
    assert client.get(f'/api/time-logs/user/{bob["id"]}', headers=admin['headers']).status_code == 200
    assert client.get(f'/api/time-logs/user/{alice["id"]}', headers=alice['headers']).status_code == 200


def test_export_csv_escapes_quotes(client, make_user, create_project, create_task):
    owner = make_user()
    task = create_task(owner, create_project(owner), title='Login page')
    log_time(client, owner, task_id=task['id'], hours_spent=2.5, description='Fixed "login", then deployed')

    resp = client.get('/api/time-logs/export', headers=owner['headers'])
    assert resp.status_code == 200
    assert resp.mimetype == 'text/csv'
    assert 'attachment' in resp.headers['Content-Disposition']

    lines = resp.get_data(as_text=True).strip().split('\n')
    assert lines[0] == '"Date","User","Project","Task","Description","Hours","Billable","Created At"'
    assert '"Fixed ""login"", then deployed",2.5,"No"' in lines[1]
    assert f'"{owner["username"]}","Website Redesign","Login page"' in lines[1]


def test_time_log_needs_task_or_project(client, make_user):
    owner = make_user()

    resp = log_time(client, owner, hours_spent=1)
    assert resp.status_code == 400
    assert resp.get_json()['details']['task_id'] == ['Time log must be associated with a task or project']


def test_long_entries_are_accepted(client, make_user, create_project):
    owner = make_user()
    project_id = create_project(owner)

    resp = log_time(client, owner, project_id=project_id, hours_spent=25)
    assert resp.status_code == 201
    assert resp.get_json()['data']['hours_spent'] == 25


def test_timesheet_defaults_to_one_week(client, make_user, create_project):
    owner = make_user()
    project_id = create_project(owner)
    log_time(client, owner, project_id=project_id, hours_spent=3, date='2025-03-05')

    resp = client.get('/api/time-logs/timesheet?start_date=2025-03-03', headers=owner['headers'])
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['end_date'] == '2025-03-09'
    assert len(data['daily_breakdown']) == 7
    assert data['total_hours'] == 3


def test_timesheet_range_is_bounded(client, make_user):
    owner = make_user()

    resp = client.get('/api/time-logs/timesheet?start_date=1000-01-01&end_date=9999-12-31',
                      headers=owner['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['details']['end_date'] == ['Timesheet range cannot exceed 366 days']

    resp = client.get('/api/time-logs/timesheet?start_date=2025-01-01&end_date=2026-01-01',
                      headers=owner['headers'])
    assert resp.status_code == 200
    assert len(resp.get_json()['data']['daily_breakdown']) == 366

    # 預設一週的結束日不會超出日期上限
    resp = client.get('/api/time-logs/timesheet?start_date=9999-12-30', headers=owner['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['data']['end_date'] == '9999-12-31'
