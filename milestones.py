from flask import Blueprint, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case
from marshmallow import Schema, fields, validate
from datetime import date, timedelta
from models import db, Milestone, Task, Comment, Attachment, TimeLog, MILESTONE_STATUSES
from auth import get_current_user
from access import require_project_access, require_project_manager, visible_project_ids
from errors import NotFound, BusinessRuleViolation, ValidationFailed
from notifications import notify_project_members
from progress import milestone_completion, persist_progress
from utils import load_json, success_response, log_activity, serialize_changes
import logging

milestones_bp = Blueprint('milestones', __name__)
logger = logging.getLogger(__name__)

MAX_UPCOMING_DAYS = 365

# ============================================
# Input Validation Schemas
# ============================================

class CreateMilestoneSchema(Schema):
    """建立里程碑驗證"""
    project_id = fields.Str(required=True, error_messages={'required': 'Project is required'})
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Milestone name is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(MILESTONE_STATUSES), load_default='pending')
    due_date = fields.Date(allow_none=True)


class UpdateMilestoneSchema(Schema):
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(MILESTONE_STATUSES))
    due_date = fields.Date(allow_none=True)


class MilestoneStatusSchema(Schema):
    status = fields.Str(required=True, validate=validate.OneOf(MILESTONE_STATUSES))

# ============================================
# 輔助函數
# ============================================

def get_milestone_or_404(milestone_id):
    milestone = db.session.get(Milestone, milestone_id)
    if not milestone:
        raise NotFound('Milestone')
    return milestone


def milestone_payload(milestone):
    """重算完成度 (值改變才寫回) 後序列化"""
    persist_progress(milestone, milestone_completion(milestone.id), 'completion_percentage')
    data = milestone.to_dict()
    data['project_name'] = milestone.project.name
    return data


def announce_status_change(milestone, old_status, user):
    """狀態有變才通知其他專案成員 (不 commit)"""
    if milestone.status == old_status:
        return
    notify_project_members(
        milestone.project_id, 'milestone', 'Milestone status updated',
        f'Milestone "{milestone.name}" changed from {old_status} to {milestone.status}',
        exclude_user_id=user.id, entity_type='milestone', entity_id=milestone.id
    )

# ============================================
# 查詢
# ============================================

@milestones_bp.route('/project/<project_id>', methods=['GET'])
@jwt_required()
def get_project_milestones(project_id):
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    query = Milestone.query.filter_by(project_id=project_id)
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)

    milestones = query.order_by(
        Milestone.due_date.is_(None), Milestone.due_date.asc(), Milestone.created_at.asc()
    ).all()

    task_counts = dict(
        (milestone_id, (total, completed)) for milestone_id, total, completed in db.session.query(
            Task.milestone_id,
            func.count(Task.id),
            func.sum(case((Task.status == 'completed', 1), else_=0))
        ).filter(Task.project_id == project_id, Task.milestone_id.isnot(None))
        .group_by(Task.milestone_id).all()
    )

    result = []
    for milestone in milestones:
        data = milestone_payload(milestone)
        total, completed = task_counts.get(milestone.id, (0, 0))
        data['task_count'] = total
        data['completed_tasks'] = int(completed or 0)
        result.append(data)

    return success_response(result)


@milestones_bp.route('/overdue', methods=['GET'])
@jwt_required()
def get_overdue_milestones():
    """過期但尚未完成的里程碑"""
    current_user = get_current_user()

    query = Milestone.query.filter(
        Milestone.due_date < date.today(),
        Milestone.status.notin_(('completed', 'cancelled'))
    )
    allowed_ids = visible_project_ids(current_user)
    if allowed_ids is not None:
        query = query.filter(Milestone.project_id.in_(allowed_ids))

    return success_response([milestone_payload(m) for m in query.order_by(Milestone.due_date.asc()).all()])


@milestones_bp.route('/upcoming', methods=['GET'])
@jwt_required()
def get_upcoming_milestones():
    """接下來 N 天 (預設 7 天) 到期的里程碑"""
    current_user = get_current_user()
    days = request.args.get('days', 7, type=int)
    if not 1 <= days <= MAX_UPCOMING_DAYS:
        raise ValidationFailed({'days': [f'Days must be between 1 and {MAX_UPCOMING_DAYS}']})
    today = date.today()

    query = Milestone.query.filter(
        Milestone.due_date >= today,
        Milestone.due_date <= today + timedelta(days=days),
        Milestone.status.notin_(('completed', 'cancelled'))
    )
    allowed_ids = visible_project_ids(current_user)
    if allowed_ids is not None:
        query = query.filter(Milestone.project_id.in_(allowed_ids))

    return success_response([milestone_payload(m) for m in query.order_by(Milestone.due_date.asc()).all()])


@milestones_bp.route('/<milestone_id>', methods=['GET'])
@jwt_required()
def get_milestone(milestone_id):
    current_user = get_current_user()
    milestone = get_milestone_or_404(milestone_id)
    require_project_access(milestone.project_id, current_user)

    data = milestone_payload(milestone)
    data['tasks'] = [t.to_dict() for t in sorted(milestone.tasks, key=lambda t: t.created_at)]
    return success_response(data)


@milestones_bp.route('/<milestone_id>/stats', methods=['GET'])
@jwt_required()
def get_milestone_stats(milestone_id):
    current_user = get_current_user()
    milestone = get_milestone_or_404(milestone_id)
    require_project_access(milestone.project_id, current_user)

    stats = db.session.query(
        func.count(Task.id).label('total'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed'),
        func.sum(case((Task.status == 'in_progress', 1), else_=0)).label('in_progress'),
        func.sum(case((Task.status == 'todo', 1), else_=0)).label('todo'),
        func.coalesce(func.sum(Task.estimated_hours), 0).label('estimated_hours'),
        func.coalesce(func.sum(Task.actual_hours), 0).label('actual_hours')
    ).filter(Task.milestone_id == milestone_id).one()

    task_ids = db.select(Task.id).where(Task.milestone_id == milestone_id)
    logged_hours = db.session.query(func.coalesce(func.sum(TimeLog.hours_spent), 0))\
        .filter(TimeLog.task_id.in_(task_ids)).scalar()
    total_comments = Comment.query.filter(
        (Comment.milestone_id == milestone_id) | Comment.task_id.in_(task_ids)
    ).count()
    total_attachments = Attachment.query.filter(
        (Attachment.milestone_id == milestone_id) | Attachment.task_id.in_(task_ids)
    ).count()

    return success_response({
        'total_tasks': stats.total or 0,
        'completed_tasks': int(stats.completed or 0),
        'in_progress_tasks': int(stats.in_progress or 0),
        'todo_tasks': int(stats.todo or 0),
        'total_estimated_hours': float(stats.estimated_hours or 0),
        'total_actual_hours': float(stats.actual_hours or 0),
        'total_logged_hours': float(logged_hours or 0),
        'total_comments': total_comments,
        'total_attachments': total_attachments,
        'completion_percentage': milestone_completion(milestone_id)
    })

# ============================================
# 建立 / 更新
# ============================================

@milestones_bp.route('', methods=['POST'])
@jwt_required()
def create_milestone():
    current_user = get_current_user()
    result = load_json(CreateMilestoneSchema)
    require_project_access(result['project_id'], current_user)

    milestone = Milestone(created_by=current_user.id, **result)
    db.session.add(milestone)
    db.session.flush()
    log_activity(current_user.id, 'create', 'milestone', milestone.id, new_values=serialize_changes(result))
    db.session.commit()

    logger.info(f"Milestone created: {milestone.id} in project {milestone.project_id}")
    return success_response(milestone.to_dict(), 'Milestone created successfully', 201)


@milestones_bp.route('/<milestone_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_milestone(milestone_id):
    current_user = get_current_user()
    milestone = get_milestone_or_404(milestone_id)
    require_project_access(milestone.project_id, current_user)
    result = load_json(UpdateMilestoneSchema)

    old_values = {field: getattr(milestone, field) for field in result}
    for field, value in result.items():
        setattr(milestone, field, value)
    if 'status' in result:
        announce_status_change(milestone, old_values['status'], current_user)

    log_activity(current_user.id, 'update', 'milestone', milestone.id,
                 old_values=serialize_changes(old_values), new_values=serialize_changes(result))
    db.session.commit()
    return success_response(milestone.to_dict(), 'Milestone updated successfully')


@milestones_bp.route('/<milestone_id>/status', methods=['PATCH', 'PUT'])
@jwt_required()
def update_milestone_status(milestone_id):
    current_user = get_current_user()
    milestone = get_milestone_or_404(milestone_id)
    require_project_access(milestone.project_id, current_user)
    result = load_json(MilestoneStatusSchema)

    old_status = milestone.status
    milestone.status = result['status']
    announce_status_change(milestone, old_status, current_user)
    log_activity(current_user.id, 'update_status', 'milestone', milestone.id,
                 old_values={'status': old_status}, new_values={'status': milestone.status})
    db.session.commit()
    return success_response(milestone.to_dict(), 'Milestone status updated successfully')

# ============================================
# 刪除 (還有任務時不能刪)
# ============================================

@milestones_bp.route('/<milestone_id>', methods=['DELETE'])
@jwt_required()
def delete_milestone(milestone_id):
    current_user = get_current_user()
    milestone = get_milestone_or_404(milestone_id)
    require_project_manager(milestone.project_id, current_user,
                            'Only project managers can delete milestones')

    if Task.query.filter_by(milestone_id=milestone_id).count() > 0:
        raise BusinessRuleViolation(
            'Cannot delete milestone with associated tasks. Please reassign or delete tasks first.'
        )

    log_activity(current_user.id, 'delete', 'milestone', milestone.id, old_values={'name': milestone.name})
    db.session.delete(milestone)
    db.session.commit()

    logger.info(f"Milestone deleted: {milestone_id} by user {current_user.email}")
    return success_response(message='Milestone deleted successfully')
