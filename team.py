from flask import Blueprint, request
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from marshmallow import Schema, fields, validate
from datetime import datetime
from models import db, User, Role, UserRole, Project, ProjectMember, Task, TimeLog, PROJECT_ROLES
from auth import get_current_user, hash_password, user_payload
from access import (require_project_access, require_project_manager, require_admin,
                    get_global_role, assign_global_role, admin_required)
from errors import NotFound, Conflict, BusinessRuleViolation, LastProjectManagerError, ValidationFailed
from notifications import notify_user
from utils import load_json, success_response, paginate_query, log_activity
import logging

team_bp = Blueprint('team', __name__)
logger = logging.getLogger(__name__)

GLOBAL_ROLES = ('admin', 'user', 'project_manager', 'developer', 'member', 'viewer')

# ============================================
# Input Validation Schemas
# ============================================

class CreateUserSchema(Schema):
    """admin 建立使用者"""
    username = fields.Str(required=True, validate=validate.Length(min=3, max=50))
    email = fields.Email(required=True)
    password = fields.Str(required=True, validate=validate.Length(min=6, max=128))
    first_name = fields.Str(validate=validate.Length(max=100))
    last_name = fields.Str(validate=validate.Length(max=100))
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    role = fields.Str(validate=validate.OneOf(GLOBAL_ROLES), load_default='user')
    is_active = fields.Bool(load_default=True)


class UpdateUserSchema(Schema):
    username = fields.Str(validate=validate.Length(min=3, max=50))
    email = fields.Email()
    password = fields.Str(validate=validate.Length(min=6, max=128))
    first_name = fields.Str(validate=validate.Length(max=100))
    last_name = fields.Str(validate=validate.Length(max=100))
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    role = fields.Str(validate=validate.OneOf(GLOBAL_ROLES))
    is_active = fields.Bool()
    is_verified = fields.Bool()


class AddMemberSchema(Schema):
    user_id = fields.Str(required=True)
    role = fields.Str(validate=validate.OneOf(PROJECT_ROLES), load_default='member')


class UpdateMemberRoleSchema(Schema):
    role = fields.Str(required=True, validate=validate.OneOf(PROJECT_ROLES))

# ============================================
# 輔助函數
# ============================================

def get_user_or_404(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User')
    return user


def get_membership_or_404(project_id, user_id):
    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    if not member:
        raise NotFound('Project member')
    return member


def require_self_or_admin(current_user, user_id):
    if current_user.id != user_id:
        require_admin(current_user)


def project_manager_count(project_id):
    return ProjectMember.query.filter_by(project_id=project_id, role='project_manager').count()


def ensure_not_last_manager(member, new_role=None):
    """
    這個成員是最後一位 project_manager 時,不能降級或移除
    """
    if member.role != 'project_manager' or new_role == 'project_manager':
        return
    if project_manager_count(member.project_id) <= 1:
        raise LastProjectManagerError()

# ============================================
# 使用者
# ============================================

@team_bp.route('/users', methods=['GET'])
@jwt_required()
def get_users():
    """使用者列表 (search / is_active / role 篩選)"""
    query = User.query

    search = request.args.get('search')
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(
            User.username.ilike(pattern),
            User.email.ilike(pattern),
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern)
        ))

    is_active = request.args.get('is_active')
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active.lower() == 'true'))

    role = request.args.get('role')
    if role:
        with_role = db.select(UserRole.user_id).join(Role, UserRole.role_id == Role.id)\
            .where(UserRole.project_id.is_(None), Role.name == role)
        if role == 'user':
            any_role = db.select(UserRole.user_id).where(UserRole.project_id.is_(None))
            query = query.filter(or_(User.id.in_(with_role), User.id.notin_(any_role)))
        else:
            query = query.filter(User.id.in_(with_role))

    items, pagination = paginate_query(query.order_by(User.created_at.desc(), User.id))
    return success_response([user_payload(u) for u in items], pagination=pagination)


@team_bp.route('/users/<user_id>', methods=['GET'])
@jwt_required()
def get_user(user_id):
    return success_response(user_payload(get_user_or_404(user_id)))


@team_bp.route('/current-user-role', methods=['GET'])
@jwt_required()
def get_current_user_role():
    current_user = get_current_user()
    role = get_global_role(current_user.id)
    return success_response({'user_id': current_user.id, 'role': role, 'is_admin': role == 'admin'})


@team_bp.route('/users', methods=['POST'])
@admin_required
def create_user():
    current_user = get_current_user()
    result = load_json(CreateUserSchema)

    if User.query.filter(or_(User.email == result['email'], User.username == result['username'])).first():
        raise Conflict('User with this email or username already exists')

    user = User(
        username=result['username'],
        email=result['email'],
        password_hash=hash_password(result['password']),
        first_name=result.get('first_name'),
        last_name=result.get('last_name'),
        phone=result.get('phone'),
        is_active=result['is_active']
    )
    db.session.add(user)
    db.session.flush()
    assign_global_role(user.id, result['role'])
    log_activity(current_user.id, 'create', 'user', user.id,
                 new_values={'username': user.username, 'email': user.email, 'role': result['role']})
    db.session.commit()

    logger.info(f"Admin {current_user.email} created user {user.email}")
    return success_response(user_payload(user), 'User created successfully', 201)


@team_bp.route('/users/<user_id>', methods=['PUT', 'PATCH'])
@admin_required
def update_user(user_id):
    current_user = get_current_user()
    user = get_user_or_404(user_id)
    result = load_json(UpdateUserSchema)

    if 'email' in result and result['email'] != user.email:
        if User.query.filter_by(email=result['email']).first():
            raise Conflict('Email already exists')
    if 'username' in result and result['username'] != user.username:
        if User.query.filter_by(username=result['username']).first():
            raise Conflict('Username already exists')

    password = result.pop('password', None)
    if password:
        user.password_hash = hash_password(password)

    role = result.pop('role', None)
    if role:
        assign_global_role(user.id, role)

    for field, value in result.items():
        setattr(user, field, value)

    changes = dict(result, role=role) if role else dict(result)
    log_activity(current_user.id, 'update', 'user', user.id, new_values=changes)
    db.session.commit()

    return success_response(user_payload(user), 'User updated successfully')


@team_bp.route('/users/<user_id>', methods=['DELETE'])
@admin_required
def delete_user(user_id):
    """
    刪除使用者

    還在專案裡、有被指派的任務或建立過專案時不能刪
    """
    current_user = get_current_user()
    user = get_user_or_404(user_id)

    if user.id == current_user.id:
        raise BusinessRuleViolation('You cannot delete your own account')
    if ProjectMember.query.filter_by(user_id=user_id).count() > 0:
        raise BusinessRuleViolation('Cannot delete user who is a member of projects. Remove them from projects first.')
    if Task.query.filter_by(assigned_to=user_id).count() > 0:
        raise BusinessRuleViolation('Cannot delete user with assigned tasks. Please reassign tasks first.')
    if Project.query.filter_by(created_by=user_id).count() > 0:
        raise BusinessRuleViolation('Cannot delete user who created projects.')

    log_activity(current_user.id, 'delete', 'user', user.id, old_values={'email': user.email})
    db.session.delete(user)
    db.session.commit()

    logger.info(f"Admin {current_user.email} deleted user {user_id}")
    return success_response(message='User deleted successfully')

# ============================================
# 專案成員
# ============================================

@team_bp.route('/projects/<project_id>/members', methods=['GET'])
@jwt_required()
def get_project_team(project_id):
    """專案成員,附上每人被指派 / 已完成的任務數"""
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    task_stats = db.session.query(
        Task.assigned_to,
        func.count(Task.id).label('assigned_tasks'),
        func.sum(case((Task.status == 'completed', 1), else_=0)).label('completed_tasks')
    ).filter(Task.project_id == project_id).group_by(Task.assigned_to).subquery()

    rows = db.session.query(
        ProjectMember, task_stats.c.assigned_tasks, task_stats.c.completed_tasks
    ).outerjoin(task_stats, ProjectMember.user_id == task_stats.c.assigned_to)\
        .filter(ProjectMember.project_id == project_id)\
        .order_by(ProjectMember.joined_at.asc()).all()

    members = []
    for member, assigned, completed in rows:
        data = member.to_dict()
        data['global_role'] = get_global_role(member.user_id)
        data['assigned_tasks'] = assigned or 0
        data['completed_tasks'] = int(completed or 0)
        members.append(data)

    return success_response(members)


@team_bp.route('/projects/<project_id>/members', methods=['POST'])
@jwt_required()
def add_project_member(project_id):
    current_user = get_current_user()
    require_project_manager(project_id, current_user, 'Only project managers can add team members')
    result = load_json(AddMemberSchema)

    user = get_user_or_404(result['user_id'])
    if not user.is_active:
        raise ValidationFailed({'user_id': ['User is not active']})
    if ProjectMember.query.filter_by(project_id=project_id, user_id=user.id).first():
        raise BusinessRuleViolation('User is already a member of this project')

    member = ProjectMember(project_id=project_id, user_id=user.id, role=result['role'])
    db.session.add(member)

    project = db.session.get(Project, project_id)
    notify_user(user.id, 'project', 'Added to project',
                f'You have been added to project "{project.name}" as {result["role"]}',
                sender_id=current_user.id, entity_type='project', entity_id=project_id)
    log_activity(current_user.id, 'add_member', 'project', project_id,
                 new_values={'user_id': user.id, 'role': result['role']})
    db.session.commit()

    logger.info(f"User {user.id} added to project {project_id} as {result['role']}")
    return success_response(member.to_dict(), 'Team member added successfully', 201)


@team_bp.route('/projects/<project_id>/members/<user_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_member_role(project_id, user_id):
    current_user = get_current_user()
    require_project_manager(project_id, current_user, 'Only project managers can change member roles')
    result = load_json(UpdateMemberRoleSchema)

    member = get_membership_or_404(project_id, user_id)
    ensure_not_last_manager(member, result['role'])

    old_role = member.role
    member.role = result['role']
    log_activity(current_user.id, 'update_member_role', 'project', project_id,
                 old_values={'user_id': user_id, 'role': old_role},
                 new_values={'user_id': user_id, 'role': member.role})
    db.session.commit()

    return success_response(member.to_dict(), 'Member role updated successfully')


@team_bp.route('/projects/<project_id>/members/<user_id>', methods=['DELETE'])
@jwt_required()
def remove_project_member(project_id, user_id):
    """
    移除專案成員

    - 不能移除最後一位 project_manager
    - 還有未完成的指派任務時不能移除
    """
    current_user = get_current_user()
    require_project_manager(project_id, current_user, 'Only project managers can remove team members')

    member = get_membership_or_404(project_id, user_id)
    ensure_not_last_manager(member)

    active_tasks = Task.query.filter(
        Task.project_id == project_id,
        Task.assigned_to == user_id,
        Task.status.notin_(('completed', 'cancelled'))
    ).count()
    if active_tasks:
        raise BusinessRuleViolation(
            'Cannot remove user with active assigned tasks. Please reassign tasks first.'
        )

    log_activity(current_user.id, 'remove_member', 'project', project_id,
                 old_values={'user_id': user_id, 'role': member.role})
    db.session.delete(member)
    db.session.commit()

    logger.info(f"User {user_id} removed from project {project_id}")
    return success_response(message='Team member removed successfully')

# ============================================
# 使用者的專案 / 任務 / 統計
# ============================================

@team_bp.route('/users/<user_id>/projects', methods=['GET'])
@jwt_required()
def get_user_projects(user_id):
    require_self_or_admin(get_current_user(), user_id)
    get_user_or_404(user_id)

    rows = db.session.query(Project, ProjectMember.role, ProjectMember.joined_at)\
        .join(ProjectMember, ProjectMember.project_id == Project.id)\
        .filter(ProjectMember.user_id == user_id)\
        .order_by(Project.created_at.desc()).all()

    projects = []
    for project, role, joined_at in rows:
        data = project.to_dict()
        data['role'] = role
        data['joined_at'] = joined_at.isoformat() if joined_at else None
        projects.append(data)
    return success_response(projects)


@team_bp.route('/users/<user_id>/assigned-tasks', methods=['GET'])
@jwt_required()
def get_user_assigned_tasks(user_id):
    require_self_or_admin(get_current_user(), user_id)
    get_user_or_404(user_id)

    query = Task.query.filter(Task.assigned_to == user_id)
    status = request.args.get('status')
    if status:
        query = query.filter(Task.status == status)

    items, pagination = paginate_query(query.order_by(Task.due_date.is_(None), Task.due_date.asc()))

    tasks = []
    for task in items:
        data = task.to_dict()
        data['project_name'] = task.project.name
        tasks.append(data)
    return success_response(tasks, pagination=pagination)


@team_bp.route('/users/<user_id>/stats', methods=['GET'])
@jwt_required()
def get_user_stats(user_id):
    require_self_or_admin(get_current_user(), user_id)
    get_user_or_404(user_id)

    task_stats = db.session.query(
        func.count(Task.id),
        func.sum(case((Task.status == 'completed', 1), else_=0)),
        func.sum(case((Task.status == 'in_progress', 1), else_=0)),
        func.sum(case((
            (Task.due_date < datetime.utcnow()) & Task.status.notin_(('completed', 'cancelled')), 1
        ), else_=0))
    ).filter(Task.assigned_to == user_id).one()

    total_hours = db.session.query(func.coalesce(func.sum(TimeLog.hours_spent), 0))\
        .filter(TimeLog.user_id == user_id).scalar()

    return success_response({
        'total_projects': ProjectMember.query.filter_by(user_id=user_id).count(),
        'total_assigned_tasks': task_stats[0] or 0,
        'completed_tasks': int(task_stats[1] or 0),
        'in_progress_tasks': int(task_stats[2] or 0),
        'overdue_tasks': int(task_stats[3] or 0),
        'total_hours_logged': float(total_hours or 0)
    })
