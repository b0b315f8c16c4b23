from flask import Blueprint, request, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from datetime import datetime, timedelta
import secrets
from models import db, Invitation, User, ProjectMember, INVITATION_ROLES, INVITATION_STATUSES
from auth import get_current_user, hash_password, issue_tokens, user_payload
from access import require_project_manager, is_global_admin, assign_global_role
from errors import (AppError, NotFound, BusinessRuleViolation, InvalidStateTransition,
                    Conflict, InsufficientPermissions)
from email_service import send_invitation_email
from notifications import notify_user
from utils import load_json, validate_request_data, success_response, build_pagination, log_activity
import logging

invitations_bp = Blueprint('invitations', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class CreateInvitationSchema(Schema):
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    role = fields.Str(validate=validate.OneOf(INVITATION_ROLES), load_default='member')
    project_id = fields.Str(allow_none=True)
    message = fields.Str(validate=validate.Length(max=1000), allow_none=True)


class BulkInvitationSchema(Schema):
    invitations = fields.List(fields.Dict(), required=True, validate=validate.Length(min=1, max=50))


class AcceptInvitationSchema(Schema):
    username = fields.Str(
        required=True,
        validate=validate.Length(min=3, max=50, error='Username must be at least 3 characters')
    )
    first_name = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    last_name = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128, error='Password must be at least 6 characters')
    )

# ============================================
# 輔助函數
# ============================================

def generate_token():
    # 32 bytes → 64 個 hex 字元
    return secrets.token_hex(32)


def new_expiry():
    return datetime.utcnow() + timedelta(days=current_app.config['INVITATION_EXPIRY_DAYS'])


def deliver(invitation):
    """
    寄信失敗只記 log,不影響邀請本身 (可以之後 resend)

    Returns:
        bool: 是否寄出
    """
    try:
        send_invitation_email(invitation)
        return True
    except Exception as e:
        logger.error(f"Failed to send invitation email to {invitation.email}: {str(e)}", exc_info=True)
        return False


def get_invitation_or_404(invitation_id):
    invitation = db.session.get(Invitation, invitation_id)
    if not invitation:
        raise NotFound('Invitation')
    return invitation


def require_inviter_or_admin(invitation, user):
    if invitation.invited_by != user.id and not is_global_admin(user.id):
        raise InsufficientPermissions('You can only manage invitations you sent')


def require_pending(invitation, action):
    if invitation.status != 'pending':
        raise InvalidStateTransition(f'Only pending invitations can be {action}')


def get_usable_invitation(token):
    """token 對應的邀請必須是 pending 且未過期"""
    invitation = Invitation.query.filter_by(token=token).first()
    if not invitation:
        raise NotFound('Invitation')
    if invitation.status != 'pending':
        raise InvalidStateTransition('Invitation has already been processed')
    if invitation.is_expired:
        raise InvalidStateTransition('Invitation has expired')
    return invitation


def create_invitation(data, inviter):
    """
    建立邀請並 commit

    - email 已經是使用者 → 失敗
    - 同一個 email 已有 pending 邀請 → 失敗
    - 指定專案時,邀請人必須是該專案的管理者
    """
    email = data['email'].lower()

    if User.query.filter(db.func.lower(User.email) == email).first():
        raise BusinessRuleViolation('User with this email already exists')
    if Invitation.query.filter(db.func.lower(Invitation.email) == email,
                               Invitation.status == 'pending').first():
        raise BusinessRuleViolation('Invitation already sent to this email')

    if data.get('project_id'):
        require_project_manager(data['project_id'], inviter,
                                'Only project managers can invite people to this project')

    invitation = Invitation(
        email=email,
        role=data['role'],
        project_id=data.get('project_id'),
        invited_by=inviter.id,
        token=generate_token(),
        message=data.get('message'),
        expires_at=new_expiry()
    )
    db.session.add(invitation)
    db.session.flush()
    log_activity(inviter.id, 'create', 'invitation', invitation.id,
                 new_values={'email': email, 'role': invitation.role, 'project_id': invitation.project_id})
    db.session.commit()

    logger.info(f"Invitation created for {email} by {inviter.email}")
    return invitation

# ============================================
# 建立邀請
# ============================================

@invitations_bp.route('', methods=['POST'])
@jwt_required()
def create_invitation_route():
    current_user = get_current_user()
    result = load_json(CreateInvitationSchema)

    invitation = create_invitation(result, current_user)
    email_sent = deliver(invitation)

    data = invitation.to_dict()
    data['email_sent'] = email_sent
    return success_response(data, 'Invitation sent successfully', 201)


@invitations_bp.route('/bulk', methods=['POST'])
@jwt_required()
def bulk_create_invitations():
    """
    一次邀請多人

    每一筆各自處理,失敗的不影響其他筆
    """
    current_user = get_current_user()
    result = load_json(BulkInvitationSchema)

    results = []
    for item in result['invitations']:
        is_valid, data = validate_request_data(CreateInvitationSchema, item)
        if not is_valid:
            results.append({'email': item.get('email'), 'success': False, 'error': data})
            continue

        try:
            invitation = create_invitation(data, current_user)
        except AppError as e:
            db.session.rollback()
            results.append({'email': data['email'], 'success': False, 'error': e.message})
            continue

        results.append({
            'email': invitation.email,
            'success': True,
            'invitation': invitation.to_dict(),
            'email_sent': deliver(invitation)
        })

    succeeded = sum(1 for r in results if r['success'])
    return success_response(
        {'results': results, 'successful': succeeded, 'failed': len(results) - succeeded},
        f'{succeeded} of {len(results)} invitations sent',
        201 if succeeded else 200
    )

# ============================================
# 查詢
# ============================================

@invitations_bp.route('', methods=['GET'])
@jwt_required()
def get_invitations():
    """admin 看全部,其他人只看自己寄出的"""
    current_user = get_current_user()
    query = Invitation.query

    if not is_global_admin(current_user.id):
        query = query.filter(Invitation.invited_by == current_user.id)
    elif request.args.get('invited_by'):
        query = query.filter(Invitation.invited_by == request.args['invited_by'])

    status = request.args.get('status')
    if status:
        if status not in INVITATION_STATUSES:
            raise AppError(f'Invalid status: {status}')
        query = query.filter(Invitation.status == status)

    email = request.args.get('email')
    if email:
        query = query.filter(Invitation.email.ilike(f'%{email}%'))

    limit = min(max(request.args.get('limit', 50, type=int), 1), current_app.config['MAX_PAGE_SIZE'])
    offset = max(request.args.get('offset', 0, type=int), 0)

    total = query.count()
    items = query.order_by(Invitation.created_at.desc(), Invitation.id).offset(offset).limit(limit).all()

    pagination = build_pagination(offset // limit + 1, limit, total)
    pagination.update({'limit': limit, 'offset': offset})
    return success_response([i.to_dict() for i in items], pagination=pagination)


@invitations_bp.route('/<invitation_id>', methods=['GET'])
@jwt_required()
def get_invitation(invitation_id):
    current_user = get_current_user()
    invitation = get_invitation_or_404(invitation_id)
    require_inviter_or_admin(invitation, current_user)
    return success_response(invitation.to_dict())

# ============================================
# 重寄 / 取消
# ============================================

@invitations_bp.route('/<invitation_id>/resend', methods=['POST'])
@jwt_required()
def resend_invitation(invitation_id):
    """換新的 token 並重設期限,舊 token 立即失效"""
    current_user = get_current_user()
    invitation = get_invitation_or_404(invitation_id)
    require_inviter_or_admin(invitation, current_user)
    require_pending(invitation, 'resent')

    invitation.token = generate_token()
    invitation.expires_at = new_expiry()
    log_activity(current_user.id, 'resend', 'invitation', invitation.id)
    db.session.commit()

    data = invitation.to_dict()
    data['email_sent'] = deliver(invitation)
    return success_response(data, 'Invitation resent successfully')


@invitations_bp.route('/<invitation_id>/cancel', methods=['POST', 'PATCH'])
@jwt_required()
def cancel_invitation(invitation_id):
    current_user = get_current_user()
    invitation = get_invitation_or_404(invitation_id)
    require_inviter_or_admin(invitation, current_user)
    require_pending(invitation, 'cancelled')

    invitation.status = 'cancelled'
    invitation.cancelled_at = datetime.utcnow()
    log_activity(current_user.id, 'cancel', 'invitation', invitation.id)
    db.session.commit()

    return success_response(invitation.to_dict(), 'Invitation cancelled successfully')

# ============================================
# 公開 API (受邀者還沒有帳號)
# ============================================

@invitations_bp.route('/token/<token>', methods=['GET'])
def get_invitation_by_token(token):
    invitation = get_usable_invitation(token)
    return success_response(invitation.to_dict())


@invitations_bp.route('/token/<token>/accept', methods=['POST'])
def accept_invitation(token):
    """
    接受邀請

    建立使用者、加入專案、更新邀請狀態在同一個 transaction 裡完成
    """
    invitation = get_usable_invitation(token)
    result = load_json(AcceptInvitationSchema)

    if User.query.filter_by(username=result['username']).first():
        raise Conflict('Username already exists')
    if User.query.filter(db.func.lower(User.email) == invitation.email.lower()).first():
        raise BusinessRuleViolation('User with this email already exists')

    try:
        user = User(
            username=result['username'],
            email=invitation.email,
            first_name=result['first_name'],
            last_name=result['last_name'],
            password_hash=hash_password(result['password']),
            is_verified=True
        )
        db.session.add(user)
        db.session.flush()
        assign_global_role(user.id, 'user')

        if invitation.project_id:
            db.session.add(ProjectMember(
                project_id=invitation.project_id,
                user_id=user.id,
                role=invitation.role
            ))

        invitation.status = 'accepted'
        invitation.accepted_at = datetime.utcnow()

        notify_user(invitation.invited_by, 'system', 'Invitation accepted',
                    f'{user.full_name} accepted your invitation',
                    sender_id=user.id, entity_type='invitation', entity_id=invitation.id)
        log_activity(user.id, 'accept', 'invitation', invitation.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.error(f"Invitation accept failed for {invitation.email}", exc_info=True)
        raise

    logger.info(f"Invitation accepted: {invitation.email}")

    data = {'user': user_payload(user)}
    data.update(issue_tokens(user))
    return success_response(data, 'Invitation accepted successfully', 201)


@invitations_bp.route('/token/<token>/decline', methods=['POST'])
def decline_invitation(token):
    invitation = get_usable_invitation(token)

    invitation.status = 'declined'
    invitation.declined_at = datetime.utcnow()
    log_activity(None, 'decline', 'invitation', invitation.id)
    db.session.commit()

    logger.info(f"Invitation declined: {invitation.email}")
    return success_response(message='Invitation declined')
