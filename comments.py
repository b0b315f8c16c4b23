from flask import Blueprint
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate, validates_schema, ValidationError
from models import db, Comment, Task, Milestone, Project
from auth import get_current_user
from access import require_project_access, require_entity_access, require_owner_or_manager, resolve_project_id
from errors import NotFound, ValidationFailed, BusinessRuleViolation
from notifications import notify_user
from utils import load_json, success_response, paginate_query, log_activity
import logging

comments_bp = Blueprint('comments', __name__)
logger = logging.getLogger(__name__)

TARGET_FIELDS = ('task_id', 'project_id', 'milestone_id')

# ============================================
# Input Validation Schemas
# ============================================

class CreateCommentSchema(Schema):
    """留言只能掛在 task / project / milestone 其中一個"""
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=5000),
        error_messages={'required': 'Comment content is required'}
    )
    task_id = fields.Str(allow_none=True)
    project_id = fields.Str(allow_none=True)
    milestone_id = fields.Str(allow_none=True)
    parent_comment_id = fields.Str(allow_none=True)

    @validates_schema
    def validate_target(self, data, **kwargs):
        targets = [f for f in TARGET_FIELDS if data.get(f)]
        if len(targets) != 1:
            raise ValidationError('Exactly one of task_id, project_id or milestone_id is required', 'target')


class UpdateCommentSchema(Schema):
    content = fields.Str(required=True, validate=validate.Length(min=1, max=5000))

# ============================================
# 輔助函數
# ============================================

def get_comment_or_404(comment_id):
    comment = db.session.get(Comment, comment_id)
    if not comment:
        raise NotFound('Comment')
    return comment


def load_target(data):
    """找到留言的目標並回傳 (target, project_id)"""
    if data.get('task_id'):
        target = db.session.get(Task, data['task_id'])
        name = 'Task'
    elif data.get('milestone_id'):
        target = db.session.get(Milestone, data['milestone_id'])
        name = 'Milestone'
    else:
        target = db.session.get(Project, data['project_id'])
        name = 'Project'

    if not target:
        raise NotFound(name)
    return target, resolve_project_id(target)

# ============================================
# 查詢
# ============================================

@comments_bp.route('/task/<task_id>', methods=['GET'])
@jwt_required()
def get_task_comments(task_id):
    """任務的留言 (舊的在前,回覆放在 replies)"""
    current_user = get_current_user()
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFound('Task')
    require_project_access(task.project_id, current_user)

    comments = Comment.query.filter_by(task_id=task_id, parent_comment_id=None)\
        .order_by(Comment.created_at.asc()).all()
    return success_response([c.to_dict(include_replies=True) for c in comments])


@comments_bp.route('/milestone/<milestone_id>', methods=['GET'])
@jwt_required()
def get_milestone_comments(milestone_id):
    current_user = get_current_user()
    milestone = db.session.get(Milestone, milestone_id)
    if not milestone:
        raise NotFound('Milestone')
    require_project_access(milestone.project_id, current_user)

    comments = Comment.query.filter_by(milestone_id=milestone_id, parent_comment_id=None)\
        .order_by(Comment.created_at.asc()).all()
    return success_response([c.to_dict(include_replies=True) for c in comments])


@comments_bp.route('/project/<project_id>', methods=['GET'])
@jwt_required()
def get_project_comments(project_id):
    """專案層級的留言 (新的在前,分頁)"""
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    query = Comment.query.filter_by(project_id=project_id, parent_comment_id=None)\
        .order_by(Comment.created_at.desc(), Comment.id)
    items, pagination = paginate_query(query)
    return success_response([c.to_dict(include_replies=True) for c in items], pagination=pagination)


@comments_bp.route('/<comment_id>', methods=['GET'])
@jwt_required()
def get_comment(comment_id):
    current_user = get_current_user()
    comment = get_comment_or_404(comment_id)
    require_entity_access(comment, current_user)
    return success_response(comment.to_dict(include_replies=True))

# ============================================
# 建立 / 更新 / 刪除
# ============================================

@comments_bp.route('', methods=['POST'])
@jwt_required()
def create_comment():
    current_user = get_current_user()
    result = load_json(CreateCommentSchema)

    target, project_id = load_target(result)
    require_project_access(project_id, current_user)

    parent_id = result.get('parent_comment_id')
    if parent_id:
        parent = db.session.get(Comment, parent_id)
        if not parent:
            raise NotFound('Parent comment')
        # 只有一層回覆,且要在同一個目標底下
        if parent.parent_comment_id:
            raise ValidationFailed({'parent_comment_id': ['Cannot reply to a reply']})
        if any(getattr(parent, f) != result.get(f) for f in TARGET_FIELDS):
            raise ValidationFailed({'parent_comment_id': ['Parent comment belongs to a different item']})

    comment = Comment(
        content=result['content'],
        user_id=current_user.id,
        task_id=result.get('task_id'),
        project_id=result.get('project_id'),
        milestone_id=result.get('milestone_id'),
        parent_comment_id=parent_id
    )
    db.session.add(comment)
    db.session.flush()

    if isinstance(target, Task):
        for user_id in {target.assigned_to, target.created_by}:
            notify_user(user_id, 'comment', 'New comment',
                        f'{current_user.username} commented on task "{target.title}"',
                        sender_id=current_user.id, entity_type='task', entity_id=target.id)

    log_activity(current_user.id, 'create', 'comment', comment.id,
                 new_values={f: result.get(f) for f in TARGET_FIELDS if result.get(f)})
    db.session.commit()

    return success_response(comment.to_dict(), 'Comment created successfully', 201)


@comments_bp.route('/<comment_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_comment(comment_id):
    """作者或專案管理者可以修改"""
    current_user = get_current_user()
    comment = get_comment_or_404(comment_id)
    require_owner_or_manager(resolve_project_id(comment), current_user, comment.user_id,
                             'You can only edit your own comments')
    result = load_json(UpdateCommentSchema)

    old_content = comment.content
    comment.content = result['content']
    comment.is_edited = True

    log_activity(current_user.id, 'update', 'comment', comment.id,
                 old_values={'content': old_content}, new_values={'content': comment.content})
    db.session.commit()
    return success_response(comment.to_dict(), 'Comment updated successfully')


@comments_bp.route('/<comment_id>', methods=['DELETE'])
@jwt_required()
def delete_comment(comment_id):
    current_user = get_current_user()
    comment = get_comment_or_404(comment_id)
    require_owner_or_manager(resolve_project_id(comment), current_user, comment.user_id,
                             'You can only delete your own comments')

    if comment.replies:
        raise BusinessRuleViolation('Cannot delete comment with replies. Please delete replies first.')

    log_activity(current_user.id, 'delete', 'comment', comment.id, old_values={'content': comment.content})
    db.session.delete(comment)
    db.session.commit()
    return success_response(message='Comment deleted successfully')
