"""
權限檢查 (所有 controller 共用)

規則:
- 全域角色只看 project_id 為空的 UserRole,預設 'user'
- 專案角色只看 ProjectMember.role
- 全域 admin 可以存取任何專案,有效角色視為 'admin'

每次檢查都重新查資料庫,不做快取
"""
from functools import wraps
from flask_jwt_extended import verify_jwt_in_request
from models import db, Role, UserRole, Project, ProjectMember, Task, Milestone, Comment, TimeLog
from errors import AccessDenied, InsufficientPermissions, AdminRequired, NotFound
import logging

logger = logging.getLogger(__name__)

MANAGER_ROLES = ('project_manager', 'admin')

# ============================================
# 角色查詢
# ============================================

def get_global_role(user_id):
    names = [
        name for (name,) in db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id, UserRole.project_id.is_(None))
        .all()
    ]
    if 'admin' in names:
        return 'admin'
    return names[0] if names else 'user'


def is_global_admin(user_id):
    return get_global_role(user_id) == 'admin'


def get_project_role(project_id, user_id):
    member = ProjectMember.query.filter_by(project_id=project_id, user_id=user_id).first()
    return member.role if member else None


def visible_project_ids(user):
    """
    使用者看得到的專案 id (subquery)

    admin 回傳 None 代表不限制
    """
    if is_global_admin(user.id):
        return None
    return db.select(ProjectMember.project_id).where(ProjectMember.user_id == user.id)

# ============================================
# Entity → Project
# ============================================

def resolve_project_id(entity):
    """從 task / milestone / comment / time log 找到所屬專案"""
    if isinstance(entity, Project):
        return entity.id
    if isinstance(entity, (Task, Milestone)):
        return entity.project_id
    if isinstance(entity, Comment):
        if entity.project_id:
            return entity.project_id
        if entity.task_id:
            return entity.task.project_id
        if entity.milestone_id:
            return entity.milestone.project_id
        return None
    if isinstance(entity, TimeLog):
        if entity.project_id:
            return entity.project_id
        return entity.task.project_id if entity.task else None
    raise TypeError(f'Cannot resolve project for {type(entity).__name__}')

# ============================================
# 檢查 (失敗直接 raise)
# ============================================

def require_project_access(project_id, user):
    """
    確認使用者是專案成員 (或全域 admin)

    Returns:
        str: 有效的專案角色
    """
    if project_id is None or db.session.get(Project, project_id) is None:
        raise NotFound('Project')

    if is_global_admin(user.id):
        return 'admin'

    role = get_project_role(project_id, user.id)
    if role is None:
        logger.warning(f"Access denied: user {user.id} is not a member of project {project_id}")
        raise AccessDenied()
    return role


def require_entity_access(entity, user):
    return require_project_access(resolve_project_id(entity), user)


def require_project_manager(project_id, user, message='Only project managers can perform this action'):
    role = require_project_access(project_id, user)
    if role not in MANAGER_ROLES:
        raise InsufficientPermissions(message)
    return role


def require_owner_or_manager(project_id, user, owner_id, message='Insufficient permissions'):
    role = require_project_access(project_id, user)
    if owner_id != user.id and role not in MANAGER_ROLES:
        raise InsufficientPermissions(message)
    return role


def require_admin(user):
    if not is_global_admin(user.id):
        raise AdminRequired()

# ============================================
# Decorator
# ============================================

def admin_required(fn):
    """需要 JWT 且是全域 admin"""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        verify_jwt_in_request()
        from auth import get_current_user
        require_admin(get_current_user())
        return fn(*args, **kwargs)
    return wrapper


def assign_global_role(user_id, role_name):
    """把使用者的全域角色換成 role_name (不 commit)"""
    role = Role.query.filter_by(name=role_name).first()
    if not role:
        raise NotFound('Role')

    UserRole.query.filter(UserRole.user_id == user_id, UserRole.project_id.is_(None))\
        .delete(synchronize_session=False)
    db.session.add(UserRole(user_id=user_id, role_id=role.id, project_id=None))
