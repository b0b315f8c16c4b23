from flask import Blueprint, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import (db, Project, ProjectMember, Milestone, Task, Comment, TimeLog, Attachment,
                    PROJECT_STATUSES, PRIORITIES, TASK_STATUSES)
from auth import get_current_user
from access import require_project_access, require_project_manager, visible_project_ids
from errors import NotFound, ValidationFailed
from progress import project_progress, milestone_completion, persist_progress
from utils import load_json, success_response, paginate_query, log_activity, serialize_changes
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class ProjectSchemaMixin:

    @validates_schema
    def validate_dates(self, data, **kwargs):
        start, end = data.get('start_date'), data.get('end_date')
        if start and end and end < start:
            raise ValidationError('End date must be after start date', 'end_date')


class CreateProjectSchema(ProjectSchemaMixin, Schema):
    """建立專案驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES), load_default='active')
    priority = fields.Str(validate=validate.OneOf(PRIORITIES), load_default='medium')
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    budget = fields.Float(validate=validate.Range(min=0), allow_none=True)


class UpdateProjectSchema(ProjectSchemaMixin, Schema):
    """更新專案驗證 (沒傳的欄位保留原值)"""
    name = fields.Str(validate=validate.Length(min=1, max=255))
    description = fields.Str(validate=validate.Length(max=5000), allow_none=True)
    status = fields.Str(validate=validate.OneOf(PROJECT_STATUSES))
    priority = fields.Str(validate=validate.OneOf(PRIORITIES))
    start_date = fields.Date(allow_none=True)
    end_date = fields.Date(allow_none=True)
    budget = fields.Float(validate=validate.Range(min=0), allow_none=True)

# ============================================
# 輔助函數
# ============================================

def get_project_or_404(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFound('Project')
    return project


def refresh_project_progress(project):
    """算出進度,值改變才寫回"""
    value = project_progress(project.id)
    persist_progress(project, value)
    return value

# ============================================
# 查詢專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def get_projects():
    """
    查詢專案列表

    一般使用者只看得到自己參與的專案,admin 看全部
    """
    current_user = get_current_user()

    member_stats = db.session.query(
        ProjectMember.project_id,
        func.count(ProjectMember.id).label('member_count')
    ).group_by(ProjectMember.project_id).subquery()

    query = db.session.query(Project, member_stats.c.member_count).outerjoin(
        member_stats, Project.id == member_stats.c.project_id
    )

    allowed_ids = visible_project_ids(current_user)
    if allowed_ids is not None:
        query = query.filter(Project.id.in_(allowed_ids))

    status = request.args.get('status')
    if status:
        query = query.filter(Project.status == status)

    priority = request.args.get('priority')
    if priority:
        query = query.filter(Project.priority == priority)

    search = request.args.get('search')
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(Project.name.ilike(pattern), Project.description.ilike(pattern)))

    rows, pagination = paginate_query(query.order_by(Project.created_at.desc(), Project.id))

    projects = []
    for project, member_count in rows:
        data = project.to_dict()
        data['progress_percentage'] = refresh_project_progress(project)
        data['team_size'] = member_count or 0
        projects.append(data)

    return success_response(projects, pagination=pagination)

# ============================================
# 查詢單一專案
# ============================================

@projects_bp.route('/<project_id>', methods=['GET'])
@jwt_required()
def get_project(project_id):
    """專案詳細資訊:里程碑、成員、任務統計"""
    current_user = get_current_user()
    role = require_project_access(project_id, current_user)
    project = get_project_or_404(project_id)

    milestone_tasks = dict(
        (milestone_id, (total, completed)) for milestone_id, total, completed in db.session.query(
            Task.milestone_id,
            func.count(Task.id),
            func.sum(case((Task.status == 'completed', 1), else_=0))
        ).filter(Task.project_id == project_id, Task.milestone_id.isnot(None))
        .group_by(Task.milestone_id).all()
    )

    milestones = []
    for milestone in sorted(project.milestones, key=lambda m: (m.due_date is None, m.due_date, m.created_at)):
        persist_progress(milestone, milestone_completion(milestone.id), 'completion_percentage')
        total, completed = milestone_tasks.get(milestone.id, (0, 0))
        data = milestone.to_dict()
        data['task_count'] = total
        data['completed_tasks'] = int(completed or 0)
        milestones.append(data)

    status_counts = dict(db.session.query(Task.status, func.count(Task.id))
                         .filter(Task.project_id == project_id)
                         .group_by(Task.status).all())
    tasks_summary = {status: status_counts.get(status, 0) for status in TASK_STATUSES}
    tasks_summary['total'] = sum(status_counts.values())

    data = project.to_dict()
    data.update({
        'progress_percentage': refresh_project_progress(project),
        'creator': project.creator.to_brief() if project.creator else None,
        'my_role': role,
        'milestones': milestones,
        'team_members': [m.to_dict() for m in project.members],
        'tasks_summary': tasks_summary
    })
    return success_response(data)

# ============================================
# 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    """建立專案,建立者自動成為 project_manager"""
    current_user = get_current_user()
    result = load_json(CreateProjectSchema)

    project = Project(created_by=current_user.id, **result)
    db.session.add(project)
    db.session.flush()

    db.session.add(ProjectMember(project_id=project.id, user_id=current_user.id, role='project_manager'))
    log_activity(current_user.id, 'create', 'project', project.id, new_values=serialize_changes(result))
    db.session.commit()

    logger.info(f"Project created: {project.name} by user {current_user.email}")
    return success_response(project.to_dict(), 'Project created successfully', 201)

# ============================================
# 更新專案
# ============================================

@projects_bp.route('/<project_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_project(project_id):
    current_user = get_current_user()
    require_project_manager(project_id, current_user,
                            'Only project managers can update this project')
    project = get_project_or_404(project_id)
    result = load_json(UpdateProjectSchema)

    start = result.get('start_date', project.start_date)
    end = result.get('end_date', project.end_date)
    if start and end and end < start:
        raise ValidationFailed({'end_date': ['End date must be after start date']})

    old_values = {field: getattr(project, field) for field in result}
    for field, value in result.items():
        setattr(project, field, value)

    log_activity(current_user.id, 'update', 'project', project.id,
                 old_values=serialize_changes(old_values), new_values=serialize_changes(result))
    db.session.commit()

    logger.info(f"Project updated: {project.id} by user {current_user.email}")
    return success_response(project.to_dict(), 'Project updated successfully')

# ============================================
# 刪除專案 (連同里程碑、任務一起刪除)
# ============================================

@projects_bp.route('/<project_id>', methods=['DELETE'])
@jwt_required()
def delete_project(project_id):
    current_user = get_current_user()
    require_project_manager(project_id, current_user,
                            'Only project managers can delete this project')
    project = get_project_or_404(project_id)

    log_activity(current_user.id, 'delete', 'project', project.id, old_values={'name': project.name})
    db.session.delete(project)
    db.session.commit()

    logger.info(f"Project deleted: {project_id} by user {current_user.email}")
    return success_response(message='Project deleted successfully')

# ============================================
# 專案統計
# ============================================

@projects_bp.route('/<project_id>/stats', methods=['GET'])
@jwt_required()
def get_project_stats(project_id):
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    milestone_stats = db.session.query(
        func.count(Milestone.id),
        func.sum(case((Milestone.status == 'completed', 1), else_=0))
    ).filter(Milestone.project_id == project_id).one()

    task_stats = db.session.query(
        func.count(Task.id),
        func.sum(case((Task.status == 'completed', 1), else_=0))
    ).filter(Task.project_id == project_id).one()

    team_size = ProjectMember.query.filter_by(project_id=project_id).count()

    total_hours = db.session.query(func.coalesce(func.sum(TimeLog.hours_spent), 0))\
        .filter(TimeLog.project_id == project_id).scalar()

    task_ids = db.select(Task.id).where(Task.project_id == project_id)
    milestone_ids = db.select(Milestone.id).where(Milestone.project_id == project_id)

    total_comments = Comment.query.filter(or_(
        Comment.project_id == project_id,
        Comment.task_id.in_(task_ids),
        Comment.milestone_id.in_(milestone_ids)
    )).count()

    total_attachments = Attachment.query.filter(or_(
        Attachment.project_id == project_id,
        Attachment.task_id.in_(task_ids)
    )).count()

    return success_response({
        'totalMilestones': milestone_stats[0] or 0,
        'completedMilestones': int(milestone_stats[1] or 0),
        'totalTasks': task_stats[0] or 0,
        'completedTasks': int(task_stats[1] or 0),
        'teamSize': team_size,
        'totalHours': float(total_hours or 0),
        'totalComments': total_comments,
        'totalAttachments': total_attachments
    })
