from flask import Blueprint, request, current_app
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate
from sqlalchemy import func
from datetime import datetime, timedelta
from models import db, Notification, ProjectMember, Setting, User, NOTIFICATION_TYPES
from auth import get_current_user
from access import is_global_admin, admin_required
from errors import NotFound, AdminRequired, ValidationFailed
from utils import load_json, success_response, paginate_query
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_SETTINGS = {
    'email_notifications': True,
    'push_notifications': False,
    'notification_types': {t: True for t in NOTIFICATION_TYPES}
}

# ============================================
# Input Validation Schemas
# ============================================

class CreateNotificationSchema(Schema):
    user_id = fields.Str()
    type = fields.Str(validate=validate.OneOf(NOTIFICATION_TYPES), load_default='system')
    title = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    message = fields.Str(required=True, validate=validate.Length(min=1))
    data = fields.Dict(allow_none=True)
    related_entity_type = fields.Str(allow_none=True)
    related_entity_id = fields.Str(allow_none=True)


class SendNotificationSchema(Schema):
    user_ids = fields.List(fields.Str(), required=True, validate=validate.Length(min=1))
    type = fields.Str(validate=validate.OneOf(NOTIFICATION_TYPES), load_default='system')
    title = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    message = fields.Str(required=True, validate=validate.Length(min=1))
    data = fields.Dict(allow_none=True)


class NotificationSettingsSchema(Schema):
    email_notifications = fields.Bool()
    push_notifications = fields.Bool()
    notification_types = fields.Dict(keys=fields.Str(validate=validate.OneOf(NOTIFICATION_TYPES)),
                                     values=fields.Bool())

# ============================================
# 內部使用的輔助函數
# ============================================

def notify_user(user_id, notification_type, title, message, sender_id=None,
                entity_type=None, entity_id=None, data=None):
    """
    建立一則通知 (不 commit)

    自己觸發的動作不通知自己;收件者關掉的通知類型也不建立
    """
    if not user_id or user_id == sender_id:
        return None
    if not load_notification_settings(user_id)['notification_types'].get(notification_type, True):
        return None

    notification = Notification(
        user_id=user_id,
        type=notification_type,
        title=title,
        message=message,
        data=data,
        sender_id=sender_id,
        related_entity_type=entity_type,
        related_entity_id=entity_id
    )
    db.session.add(notification)
    return notification


def notify_project_members(project_id, notification_type, title, message,
                           exclude_user_id=None, entity_type='project', entity_id=None):
    """為專案成員批量建立通知 (不 commit)"""
    members = ProjectMember.query.filter_by(project_id=project_id).all()

    notifications = []
    for member in members:
        notification = notify_user(
            member.user_id, notification_type, title, message,
            sender_id=exclude_user_id,
            entity_type=entity_type,
            entity_id=entity_id or project_id
        )
        if notification:
            notifications.append(notification)
    return notifications


def get_user_notification(notification_id, user):
    notification = Notification.query.filter_by(id=notification_id, user_id=user.id).first()
    if not notification:
        raise NotFound('Notification')
    return notification

# ============================================
# 1. 查詢
# ============================================

@notifications_bp.route('', methods=['GET'])
@jwt_required()
def get_notifications():
    """取得當前使用者的通知 (新的在前)"""
    user = get_current_user()

    query = Notification.query.filter_by(user_id=user.id)

    notification_type = request.args.get('type')
    if notification_type:
        query = query.filter_by(type=notification_type)

    is_read = request.args.get('is_read')
    if is_read is not None:
        query = query.filter_by(is_read=is_read.lower() == 'true')

    items, pagination = paginate_query(query.order_by(Notification.created_at.desc()))
    return success_response([n.to_dict() for n in items], pagination=pagination)


@notifications_bp.route('/unread-count', methods=['GET'])
@jwt_required()
def get_unread_count():
    user = get_current_user()
    count = Notification.query.filter_by(user_id=user.id, is_read=False).count()
    return success_response({'count': count})


@notifications_bp.route('/type/<notification_type>', methods=['GET'])
@jwt_required()
def get_notifications_by_type(notification_type):
    user = get_current_user()
    if notification_type not in NOTIFICATION_TYPES:
        raise ValidationFailed({'type': [f'Must be one of: {", ".join(NOTIFICATION_TYPES)}']})

    query = Notification.query.filter_by(user_id=user.id, type=notification_type)\
        .order_by(Notification.created_at.desc())
    items, pagination = paginate_query(query)
    return success_response([n.to_dict() for n in items], pagination=pagination)


@notifications_bp.route('/user/<user_id>', methods=['GET'])
@admin_required
def get_user_notifications(user_id):
    """admin 查看特定使用者的通知"""
    if not db.session.get(User, user_id):
        raise NotFound('User')

    query = Notification.query.filter_by(user_id=user_id).order_by(Notification.created_at.desc())
    items, pagination = paginate_query(query)
    return success_response([n.to_dict() for n in items], pagination=pagination)


@notifications_bp.route('/<notification_id>', methods=['GET'])
@jwt_required()
def get_notification(notification_id):
    notification = get_user_notification(notification_id, get_current_user())
    return success_response(notification.to_dict())

# ============================================
# 2. 建立 / 發送
# ============================================

@notifications_bp.route('', methods=['POST'])
@jwt_required()
def create_notification():
    """建立通知;發給別人需要 admin"""
    user = get_current_user()
    result = load_json(CreateNotificationSchema)

    recipient_id = result.get('user_id') or user.id
    if recipient_id != user.id and not is_global_admin(user.id):
        raise AdminRequired()
    if not db.session.get(User, recipient_id):
        raise NotFound('User')

    notification = Notification(
        user_id=recipient_id,
        type=result['type'],
        title=result['title'],
        message=result['message'],
        data=result.get('data'),
        sender_id=user.id,
        related_entity_type=result.get('related_entity_type'),
        related_entity_id=result.get('related_entity_id')
    )
    db.session.add(notification)
    db.session.commit()

    return success_response(notification.to_dict(), 'Notification created successfully', 201)


@notifications_bp.route('/send', methods=['POST'])
@admin_required
def send_notifications():
    """
    發送同一則通知給多位使用者

    每位收件者各建一筆
    """
    sender = get_current_user()
    result = load_json(SendNotificationSchema)

    user_ids = list(dict.fromkeys(result['user_ids']))
    existing = {uid for (uid,) in db.session.query(User.id).filter(User.id.in_(user_ids)).all()}
    missing = [uid for uid in user_ids if uid not in existing]
    if missing:
        raise ValidationFailed({'user_ids': [f'Unknown users: {", ".join(missing)}']})

    created = []
    for user_id in user_ids:
        notification = Notification(
            user_id=user_id,
            type=result['type'],
            title=result['title'],
            message=result['message'],
            data=result.get('data'),
            sender_id=sender.id
        )
        db.session.add(notification)
        created.append(notification)
    db.session.commit()

    logger.info(f"Admin {sender.id} sent notification to {len(created)} users")
    return success_response(
        {'sent': len(created), 'notifications': [n.to_dict() for n in created]},
        f'Notification sent to {len(created)} users',
        201
    )

# ============================================
# 3. 已讀 / 刪除
# ============================================

@notifications_bp.route('/<notification_id>/read', methods=['PATCH', 'PUT'])
@jwt_required()
def mark_notification_read(notification_id):
    notification = get_user_notification(notification_id, get_current_user())
    notification.is_read = True
    db.session.commit()
    return success_response(notification.to_dict(), 'Notification marked as read')


@notifications_bp.route('/read-all', methods=['PATCH', 'PUT'])
@jwt_required()
def mark_all_notifications_read():
    user = get_current_user()
    updated = Notification.query.filter_by(user_id=user.id, is_read=False)\
        .update({'is_read': True})
    db.session.commit()
    return success_response({'updated': updated}, 'All notifications marked as read')


@notifications_bp.route('/<notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    notification = get_user_notification(notification_id, get_current_user())
    db.session.delete(notification)
    db.session.commit()
    return success_response(message='Notification deleted successfully')


@notifications_bp.route('/cleanup', methods=['DELETE', 'POST'])
@admin_required
def cleanup_notifications():
    """刪除超過保留天數且已讀的通知"""
    days = current_app.config['NOTIFICATION_RETENTION_DAYS']
    cutoff = datetime.utcnow() - timedelta(days=days)

    deleted = Notification.query.filter(
        Notification.is_read.is_(True),
        Notification.created_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()

    logger.info(f"Notification cleanup removed {deleted} rows older than {days} days")
    return success_response({'deleted': deleted}, f'Cleaned up {deleted} old notifications')

# ============================================
# 4. 通知設定 (存在 settings 表)
# ============================================

def _settings_row(user_id):
    return Setting.query.filter_by(user_id=user_id, project_id=None,
                                   setting_key='notifications').first()


def load_notification_settings(user_id):
    settings = dict(DEFAULT_NOTIFICATION_SETTINGS)
    settings['notification_types'] = dict(DEFAULT_NOTIFICATION_SETTINGS['notification_types'])

    row = _settings_row(user_id)
    if row and row.setting_value:
        stored = row.setting_value
        for key in ('email_notifications', 'push_notifications'):
            if key in stored:
                settings[key] = stored[key]
        settings['notification_types'].update(stored.get('notification_types') or {})
    return settings


@notifications_bp.route('/settings', methods=['GET'])
@jwt_required()
def get_notification_settings():
    user = get_current_user()
    return success_response(load_notification_settings(user.id))


@notifications_bp.route('/settings', methods=['PATCH', 'PUT'])
@jwt_required()
def update_notification_settings():
    user = get_current_user()
    result = load_json(NotificationSettingsSchema)

    settings = load_notification_settings(user.id)
    for key in ('email_notifications', 'push_notifications'):
        if key in result:
            settings[key] = result[key]
    settings['notification_types'].update(result.get('notification_types') or {})

    row = _settings_row(user.id)
    if not row:
        row = Setting(user_id=user.id, project_id=None, setting_key='notifications')
        db.session.add(row)
    row.setting_value = settings
    db.session.commit()

    return success_response(settings, 'Notification settings updated')

# ============================================
# 5. 通知統計
# ============================================

@notifications_bp.route('/stats', methods=['GET'])
@jwt_required()
def get_notification_stats():
    user = get_current_user()

    total = Notification.query.filter_by(user_id=user.id).count()
    unread = Notification.query.filter_by(user_id=user.id, is_read=False).count()

    type_stats = db.session.query(
        Notification.type,
        func.count(Notification.id)
    ).filter(Notification.user_id == user.id).group_by(Notification.type).all()

    today_start = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    today_count = Notification.query.filter(
        Notification.user_id == user.id,
        Notification.created_at >= today_start
    ).count()

    return success_response({
        'total': total,
        'unread': unread,
        'read': total - unread,
        'today': today_count,
        'by_type': {t: count for t, count in type_stats}
    })
