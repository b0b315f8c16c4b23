from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

import invitations
from extensions import mail
from models import db, Invitation, ProjectMember, User

ACCEPT_PAYLOAD = {
    'username': 'newbie',
    'first_name': 'New',
    'last_name': 'Person',
    'password': 'secret123'
}


@pytest.fixture
def invite(client):
    def _invite(user, email='newbie@example.com', **fields):
        payload = {'email': email}
        payload.update(fields)
        return client.post('/api/invitations', json=payload, headers=user['headers'])

    return _invite


def token_for(app, email):
    with app.app_context():
        return Invitation.query.filter_by(email=email).order_by(Invitation.created_at.desc()).first().token


def test_create_invitation_sends_email(app, make_user, create_project, invite):
    owner = make_user()
    project_id = create_project(owner)

    with mail.record_messages() as outbox:
        resp = invite(owner, project_id=project_id, role='developer')

    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'pending'
    assert data['role'] == 'developer'
    assert data['email_sent'] is True
    assert 'token' not in data

    assert len(outbox) == 1
    assert outbox[0].recipients == ['newbie@example.com']
    assert f'/invite?token={token_for(app, "newbie@example.com")}' in outbox[0].body

    with app.app_context():
        assert len(token_for(app, 'newbie@example.com')) == 64


def test_duplicate_pending_invitation_is_rejected(make_user, invite):
    owner = make_user()
    assert invite(owner).status_code == 201

    resp = invite(owner)
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invitation already sent to this email'


def test_inviting_existing_user_is_rejected(make_user, invite):
    owner = make_user()
    existing = make_user()

    resp = invite(owner, email=existing['email'])
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'User with this email already exists'


def test_only_managers_invite_to_project(make_user, create_project, add_member, invite):
    owner = make_user()
    member = make_user()
    project_id = create_project(owner)
    add_member(owner, project_id, member)

    assert invite(member, project_id=project_id).status_code == 400
    assert invite(owner, project_id=project_id).status_code == 201


def test_accept_creates_user_and_membership(app, client, make_user, create_project, invite):
    owner = make_user()
    project_id = create_project(owner)
    invite(owner, project_id=project_id, role='developer')
    token = token_for(app, 'newbie@example.com')

    preview = client.get(f'/api/invitations/token/{token}')
    assert preview.status_code == 200
    assert preview.get_json()['data']['project_name'] == 'Website Redesign'

    resp = client.post(f'/api/invitations/token/{token}/accept', json=ACCEPT_PAYLOAD)
    assert resp.status_code == 201
    body = resp.get_json()['data']
    assert body['user']['email'] == 'newbie@example.com'
    assert body['token']

    with app.app_context():
        user = User.query.filter_by(email='newbie@example.com').one()
        member = ProjectMember.query.filter_by(project_id=project_id, user_id=user.id).one()
        assert member.role == 'developer'
        assert Invitation.query.filter_by(token=token).one().status == 'accepted'

    # 邀請人收到通知
    notes = client.get('/api/notifications', headers=owner['headers']).get_json()['data']
    assert notes[0]['title'] == 'Invitation accepted'


def test_accepting_twice_fails(app, client, make_user, invite):
    owner = make_user()
    invite(owner)
    token = token_for(app, 'newbie@example.com')

    assert client.post(f'/api/invitations/token/{token}/accept', json=ACCEPT_PAYLOAD).status_code == 201

    resp = client.post(f'/api/invitations/token/{token}/accept', json=dict(ACCEPT_PAYLOAD, username='other'))
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invitation has already been processed'


def test_expired_invitation_cannot_be_accepted(app, client, make_user, invite):
    owner = make_user()
    invite(owner)
    token = token_for(app, 'newbie@example.com')

    with app.app_context():
        invitation = Invitation.query.filter_by(token=token).one()
        invitation.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()

    resp = client.post(f'/api/invitations/token/{token}/accept', json=ACCEPT_PAYLOAD)
    assert resp.status_code == 400
    assert resp.get_json()['message'] == 'Invitation has expired'

    with app.app_context():
        assert User.query.filter_by(email='newbie@example.com').first() is None


def test_accept_validates_new_account(app, client, make_user, invite):
    owner = make_user()
    invite(owner)
    token = token_for(app, 'newbie@example.com')

    resp = client.post(f'/api/invitations/token/{token}/accept',
                       json={'username': 'ab', 'first_name': 'A', 'last_name': 'B', 'password': '123'})
    assert resp.status_code == 400
    details = resp.get_json()['details']
    assert 'username' in details
    assert 'password' in details


def test_resend_replaces_token(app, client, make_user, invite):
    owner = make_user()
    invitation = invite(owner).get_json()['data']
    old_token = token_for(app, 'newbie@example.com')

    resp = client.post(f'/api/invitations/{invitation["id"]}/resend', headers=owner['headers'])
    assert resp.status_code == 200

    new_token = token_for(app, 'newbie@example.com')
    assert new_token != old_token
    assert client.get(f'/api/invitations/token/{old_token}').status_code == 404
    assert client.get(f'/api/invitations/token/{new_token}').status_code == 200


def test_cancel_and_decline(app, client, make_user, invite):
    owner = make_user()
    stranger = make_user()
    first = invite(owner).get_json()['data']

    assert client.post(f'/api/invitations/{first["id"]}/cancel', headers=stranger['headers']).status_code == 400

    resp = client.post(f'/api/invitations/{first["id"]}/cancel', headers=owner['headers'])
    assert resp.get_json()['data']['status'] == 'cancelled'
    assert client.post(f'/api/invitations/{first["id"]}/resend', headers=owner['headers']).status_code == 400

    invite(owner, email='maybe@example.com')
    token = token_for(app, 'maybe@example.com')
    assert client.post(f'/api/invitations/token/{token}/decline').status_code == 200
    assert client.get(f'/api/invitations/token/{token}').status_code == 400


def test_bulk_reports_each_result(make_user, client):
    owner = make_user()
    existing = make_user()

    resp = client.post('/api/invitations/bulk', headers=owner['headers'], json={'invitations': [
        {'email': 'one@example.com'},
        {'email': existing['email']},
        {'email': 'not-an-email'}
    ]})
    assert resp.status_code == 201
    body = resp.get_json()['data']
    assert body['successful'] == 1
    assert body['failed'] == 2
    assert [r['success'] for r in body['results']] == [True, False, False]


def test_list_shows_only_own_invitations(make_user, client, invite):
    alice = make_user()
    bob = make_user()
    admin = make_user(role='admin')
    invite(alice, email='a@example.com')
    invite(bob, email='b@example.com')

    mine = client.get('/api/invitations', headers=alice['headers']).get_json()['data']
    assert [i['email'] for i in mine] == ['a@example.com']

    everything = client.get('/api/invitations', headers=admin['headers']).get_json()
    assert everything['pagination']['totalItems'] == 2


def test_failed_membership_grant_rolls_back_acceptance(app, client, make_user, create_project, invite,
                                                       monkeypatch):
    owner = make_user()
    project_id = create_project(owner)
    invite(owner, project_id=project_id, role='developer')
    token = token_for(app, 'newbie@example.com')

    def reject_membership(**kwargs):
        raise IntegrityError('INSERT INTO project_members', kwargs, Exception('membership insert failed'))

    monkeypatch.setattr(invitations, 'ProjectMember', reject_membership)

    resp = client.post(f'/api/invitations/token/{token}/accept', json=ACCEPT_PAYLOAD)
    assert resp.status_code == 500

    with app.app_context():
        assert User.query.filter_by(email='newbie@example.com').first() is None
        assert User.query.filter_by(username='newbie').first() is None
        assert Invitation.query.filter_by(token=token).one().status == 'pending'
        assert ProjectMember.query.filter_by(project_id=project_id).count() == 1

    # 錯誤排除後同一個邀請還能正常接受
    monkeypatch.undo()
    assert client.post(f'/api/invitations/token/{token}/accept', json=ACCEPT_PAYLOAD).status_code == 201
