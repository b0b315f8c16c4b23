from flask import Blueprint, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from marshmallow import Schema, fields, validate
from datetime import datetime
from models import (db, Task, Milestone, Comment, Attachment, TimeLog,
                    TASK_STATUSES, PRIORITIES, TASK_TYPES)
from auth import get_current_user
from access import (require_project_access, require_project_manager, get_project_role,
                    visible_project_ids, MANAGER_ROLES)
from errors import NotFound, ValidationFailed, InsufficientPermissions, BusinessRuleViolation
from notifications import notify_user
from realtime import emit_project_event
from utils import load_json, success_response, paginate_query, log_activity, serialize_changes
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# urgent 最前面
PRIORITY_RANK = case(
    (Task.priority == 'urgent', 1),
    (Task.priority == 'high', 2),
    (Task.priority == 'medium', 3),
    (Task.priority == 'low', 4),
    else_=5
)

CLOSED_STATUSES = ('completed', 'cancelled')

# ============================================
# Input Validation Schemas
# ============================================

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    project_id = fields.Str(required=True, error_messages={'required': 'Project is required'})
    milestone_id = fields.Str(allow_none=True)
    parent_task_id = fields.Str(allow_none=True)
    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES), load_default='todo')
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='medium')
    type = fields.Str(validate=validate.OneOf(TASK_TYPES), load_default='task')
    estimated_hours = fields.Float(validate=validate.Range(min=0), allow_none=True)
    due_date = fields.DateTime(allow_none=True)
    assigned_to = fields.Str(allow_none=True)


class UpdateTaskSchema(Schema):
    """更新任務驗證"""
    milestone_id = fields.Str(allow_none=True)
    title = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(TASK_STATUSES))
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    type = fields.Str(validate=validate.OneOf(TASK_TYPES))
    estimated_hours = fields.Float(validate=validate.Range(min=0), allow_none=True)
    actual_hours = fields.Float(validate=validate.Range(min=0), allow_none=True)
    progress_percentage = fields.Int(validate=validate.Range(min=0, max=100))
    due_date = fields.DateTime(allow_none=True)
    assigned_to = fields.Str(allow_none=True)


class AssignTaskSchema(Schema):
    assigned_to = fields.Str(required=True, allow_none=True)


class TaskStatusSchema(Schema):
    status = fields.Str(required=True, validate=validate.OneOf(TASK_STATUSES))


class TaskProgressSchema(Schema):
    progress_percentage = fields.Int(
        required=True,
        validate=validate.Range(min=0, max=100, error='Progress must be between 0 and 100')
    )

# ============================================
# 輔助函數
# ============================================

def get_task_or_404(task_id):
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFound('Task')
    return task


def check_milestone_in_project(milestone_id, project_id):
    milestone = db.session.get(Milestone, milestone_id)
    if not milestone or milestone.project_id != project_id:
        raise ValidationFailed({'milestone_id': ['Milestone does not belong to this project']})


def check_assignee_is_member(user_id, project_id):
    if not get_project_role(project_id, user_id):
        raise ValidationFailed({'assigned_to': ['Assigned user is not a member of this project']})


def require_assignee_or_manager(task, user, message):
    role = require_project_access(task.project_id, user)
    if task.assigned_to != user.id and role not in MANAGER_ROLES:
        raise InsufficientPermissions(message)
    return role


def task_row_stats():
    """comment / attachment 數量和已登記工時的 subquery"""
    comment_counts = db.session.query(
        Comment.task_id, func.count(Comment.id).label('comments_count')
    ).group_by(Comment.task_id).subquery()

    attachment_counts = db.session.query(
        Attachment.task_id, func.count(Attachment.id).label('attachments_count')
    ).group_by(Attachment.task_id).subquery()

    time_spent = db.session.query(
        TimeLog.task_id, func.sum(TimeLog.hours_spent).label('total_time_spent')
    ).group_by(TimeLog.task_id).subquery()

    return comment_counts, attachment_counts, time_spent


def ordered(query):
    return query.order_by(
        PRIORITY_RANK,
        Task.due_date.is_(None),
        Task.due_date.asc(),
        Task.created_at.desc(),
        Task.id
    )


def broadcast_task(task, event):
    emit_project_event(task.project_id, event, {'task': task.to_dict()})

# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('/project/<project_id>', methods=['GET'])
@jwt_required()
def get_project_tasks(project_id):
    """
    專案的任務列表

    排序: priority (urgent → low) → due_date → 建立時間 (新的在前)
    """
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    comment_counts, attachment_counts, time_spent = task_row_stats()
    query = db.session.query(
        Task,
        comment_counts.c.comments_count,
        attachment_counts.c.attachments_count,
        time_spent.c.total_time_spent
    ).outerjoin(comment_counts, Task.id == comment_counts.c.task_id)\
        .outerjoin(attachment_counts, Task.id == attachment_counts.c.task_id)\
        .outerjoin(time_spent, Task.id == time_spent.c.task_id)\
        .filter(Task.project_id == project_id)

    for field in ('status', 'priority', 'assigned_to', 'milestone_id'):
        value = request.args.get(field)
        if value:
            query = query.filter(getattr(Task, field) == value)

    search = request.args.get('search')
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    rows, pagination = paginate_query(ordered(query))

    tasks = []
    for task, comments_count, attachments_count, total_time in rows:
        data = task.to_dict()
        data['comments_count'] = comments_count or 0
        data['attachments_count'] = attachments_count or 0
        data['total_time_spent'] = float(total_time or 0)
        tasks.append(data)

    return success_response(tasks, pagination=pagination)


@tasks_bp.route('/user/assigned', methods=['GET'])
@jwt_required()
def get_my_assigned_tasks():
    """指派給我的任務"""
    current_user = get_current_user()

    query = Task.query.filter(Task.assigned_to == current_user.id)
    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    items, pagination = paginate_query(ordered(query))

    tasks = []
    for task in items:
        data = task.to_dict()
        data['project_name'] = task.project.name
        tasks.append(data)
    return success_response(tasks, pagination=pagination)


@tasks_bp.route('/overdue', methods=['GET'])
@jwt_required()
def get_overdue_tasks():
    """我參與的專案裡已過期、尚未完成的任務"""
    current_user = get_current_user()

    query = Task.query.filter(
        Task.due_date < datetime.utcnow(),
        Task.status.notin_(CLOSED_STATUSES)
    )
    allowed_ids = visible_project_ids(current_user)
    if allowed_ids is not None:
        query = query.filter(Task.project_id.in_(allowed_ids))

    tasks = []
    for task in query.order_by(Task.due_date.asc()).all():
        data = task.to_dict()
        data['project_name'] = task.project.name
        tasks.append(data)
    return success_response(tasks)


@tasks_bp.route('/<task_id>', methods=['GET'])
@jwt_required()
def get_task(task_id):
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_project_access(task.project_id, current_user)

    data = task.to_dict()
    data.update({
        'project_name': task.project.name,
        'milestone_name': task.milestone.name if task.milestone else None,
        'creator': task.creator.to_brief() if task.creator else None,
        'subtasks': [t.to_dict() for t in task.subtasks],
        'comments_count': len(task.comments),
        'attachments_count': len(task.attachments),
        'total_time_spent': float(sum(log.hours_spent for log in task.time_logs))
    })
    return success_response(data)

# ============================================
# 建立任務
# ============================================

@tasks_bp.route('', methods=['POST'])
@jwt_required()
def create_task():
    """
    建立任務

    - 專案必須存在且呼叫者是成員
    - milestone 必須屬於同一個專案
    - assignee 必須是專案成員
    """
    current_user = get_current_user()
    result = load_json(CreateTaskSchema)
    project_id = result['project_id']

    require_project_access(project_id, current_user)

    if result.get('milestone_id'):
        check_milestone_in_project(result['milestone_id'], project_id)
    if result.get('parent_task_id'):
        parent = db.session.get(Task, result['parent_task_id'])
        if not parent or parent.project_id != project_id:
            raise ValidationFailed({'parent_task_id': ['Parent task does not belong to this project']})
    if result.get('assigned_to'):
        check_assignee_is_member(result['assigned_to'], project_id)

    task = Task(created_by=current_user.id, **result)
    db.session.add(task)
    db.session.flush()

    if task.assigned_to:
        notify_user(task.assigned_to, 'task', 'New task assigned',
                    f'You have been assigned to task "{task.title}"',
                    sender_id=current_user.id, entity_type='task', entity_id=task.id)

    log_activity(current_user.id, 'create', 'task', task.id, new_values=serialize_changes(result))
    db.session.commit()

    logger.info(f"Task created: {task.id} in project {project_id} by user {current_user.email}")
    broadcast_task(task, 'task-created')
    return success_response(task.to_dict(), 'Task created successfully', 201)

# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/<task_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_task(task_id):
    """只有被指派者或專案管理者可以更新"""
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_assignee_or_manager(task, current_user,
                                'Only the assigned user or project manager can update this task')

    result = load_json(UpdateTaskSchema)

    if result.get('milestone_id'):
        check_milestone_in_project(result['milestone_id'], task.project_id)
    if result.get('assigned_to'):
        check_assignee_is_member(result['assigned_to'], task.project_id)

    old_values = {field: getattr(task, field) for field in result}
    previous_assignee = task.assigned_to
    for field, value in result.items():
        setattr(task, field, value)

    if task.assigned_to and task.assigned_to != previous_assignee:
        notify_user(task.assigned_to, 'task', 'New task assigned',
                    f'You have been assigned to task "{task.title}"',
                    sender_id=current_user.id, entity_type='task', entity_id=task.id)

    log_activity(current_user.id, 'update', 'task', task.id,
                 old_values=serialize_changes(old_values), new_values=serialize_changes(result))
    db.session.commit()

    broadcast_task(task, 'task-updated')
    return success_response(task.to_dict(), 'Task updated successfully')


@tasks_bp.route('/<task_id>/assign', methods=['PATCH', 'PUT'])
@jwt_required()
def assign_task(task_id):
    """指派任務 (專案管理者)"""
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_project_manager(task.project_id, current_user,
                            'Only project managers can assign tasks')

    result = load_json(AssignTaskSchema)
    assignee_id = result['assigned_to']
    if assignee_id:
        check_assignee_is_member(assignee_id, task.project_id)

    old_assignee = task.assigned_to
    task.assigned_to = assignee_id

    if assignee_id and assignee_id != old_assignee:
        notify_user(assignee_id, 'task', 'New task assigned',
                    f'You have been assigned to task "{task.title}"',
                    sender_id=current_user.id, entity_type='task', entity_id=task.id)

    log_activity(current_user.id, 'assign', 'task', task.id,
                 old_values={'assigned_to': old_assignee}, new_values={'assigned_to': assignee_id})
    db.session.commit()

    broadcast_task(task, 'task-updated')
    return success_response(task.to_dict(), 'Task assigned successfully')


@tasks_bp.route('/<task_id>/status', methods=['PATCH', 'PUT'])
@jwt_required()
def update_task_status(task_id):
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_assignee_or_manager(task, current_user,
                                'Only the assigned user or project manager can update task status')

    result = load_json(TaskStatusSchema)
    old_status = task.status
    task.status = result['status']

    if task.status != old_status and task.created_by:
        notify_user(task.created_by, 'task', 'Task status updated',
                    f'Task "{task.title}" moved from {old_status} to {task.status}',
                    sender_id=current_user.id, entity_type='task', entity_id=task.id)

    log_activity(current_user.id, 'update_status', 'task', task.id,
                 old_values={'status': old_status}, new_values={'status': task.status})
    db.session.commit()

    broadcast_task(task, 'task-updated')
    return success_response(task.to_dict(), 'Task status updated successfully')


@tasks_bp.route('/<task_id>/progress', methods=['PATCH', 'PUT'])
@jwt_required()
def update_task_progress(task_id):
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_assignee_or_manager(task, current_user,
                                'Only the assigned user or project manager can update task progress')

    result = load_json(TaskProgressSchema)
    old_progress = task.progress_percentage
    task.progress_percentage = result['progress_percentage']

    log_activity(current_user.id, 'update_progress', 'task', task.id,
                 old_values={'progress_percentage': old_progress},
                 new_values={'progress_percentage': task.progress_percentage})
    db.session.commit()

    broadcast_task(task, 'task-updated')
    return success_response(task.to_dict(), 'Task progress updated successfully')

# ============================================
# 刪除任務
# ============================================

@tasks_bp.route('/<task_id>', methods=['DELETE'])
@jwt_required()
def delete_task(task_id):
    current_user = get_current_user()
    task = get_task_or_404(task_id)
    require_project_manager(task.project_id, current_user,
                            'Only project managers can delete tasks')

    if task.subtasks:
        raise BusinessRuleViolation('Cannot delete task with subtasks. Please delete subtasks first.')

    project_id = task.project_id
    log_activity(current_user.id, 'delete', 'task', task.id, old_values={'title': task.title})
    db.session.delete(task)
    db.session.commit()

    logger.info(f"Task deleted: {task_id} by user {current_user.email}")
    emit_project_event(project_id, 'task-deleted', {'taskId': task_id})
    return success_response(message='Task deleted successfully')
