from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import uuid

db = SQLAlchemy()


def generate_uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# ============================================
# 列舉值
# ============================================

PROJECT_STATUSES = ('active', 'completed', 'on_hold', 'cancelled')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
PROJECT_ROLES = ('member', 'developer', 'project_manager', 'viewer', 'admin')
MILESTONE_STATUSES = ('pending', 'in_progress', 'completed', 'cancelled')
TASK_STATUSES = ('todo', 'in_progress', 'review', 'completed', 'cancelled')
TASK_TYPES = ('task', 'bug', 'feature', 'story')
NOTIFICATION_TYPES = ('task', 'project', 'milestone', 'comment', 'system')
INVITATION_ROLES = ('member', 'developer', 'project_manager', 'viewer')
INVITATION_STATUSES = ('pending', 'accepted', 'declined', 'cancelled')


# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    avatar_url = db.Column(db.String(500))
    phone = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    roles = db.relationship('UserRole', backref='user', lazy=True, cascade='all,delete-orphan')
    notifications = db.relationship('Notification', foreign_keys='Notification.user_id',
                                    backref='user', lazy=True, cascade='all,delete-orphan')
    comments = db.relationship('Comment', backref='author', lazy=True, cascade='all,delete-orphan')
    time_logs = db.relationship('TimeLog', backref='user', lazy=True, cascade='all,delete-orphan')
    settings = db.relationship('Setting', backref='user', lazy=True, cascade='all,delete-orphan')
    invitations_sent = db.relationship('Invitation', backref='inviter', lazy=True,
                                       cascade='all,delete-orphan')

    @property
    def full_name(self):
        parts = [p for p in (self.first_name, self.last_name) if p]
        return ' '.join(parts) or self.username

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'avatar_url': self.avatar_url,
            'phone': self.phone,
            'is_active': self.is_active,
            'is_verified': self.is_verified,
            'last_login': _iso(self.last_login),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }

    def to_brief(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'avatar_url': self.avatar_url
        }


# ============================================
# 2. Role / UserRole (全域角色, project_id 為空)
# ============================================
class Role(db.Model):
    __tablename__ = 'roles'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.Text)
    permissions = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class UserRole(db.Model):
    __tablename__ = 'user_roles'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    role_id = db.Column(db.String(36), db.ForeignKey('roles.id', ondelete='CASCADE'), nullable=False)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    role = db.relationship('Role')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'role_id', 'project_id', name='unique_user_role'),
    )


# ============================================
# 3. Project 模型
# ============================================
class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='active')
    priority = db.Column(db.String(20), nullable=False, default='medium')
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    budget = db.Column(db.Float)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯 (刪除專案時一起刪除)
    creator = db.relationship('User', foreign_keys=[created_by], backref='created_projects')
    members = db.relationship('ProjectMember', backref='project', lazy=True, cascade='all,delete-orphan')
    milestones = db.relationship('Milestone', backref='project', lazy=True, cascade='all,delete-orphan')
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    comments = db.relationship('Comment', backref='project', lazy=True, cascade='all,delete-orphan')
    time_logs = db.relationship('TimeLog', backref='project', lazy=True, cascade='all,delete-orphan')
    attachments = db.relationship('Attachment', backref='project', lazy=True, cascade='all,delete-orphan')
    invitations = db.relationship('Invitation', backref='project', lazy=True, cascade='all,delete-orphan')
    scoped_roles = db.relationship('UserRole', backref='project', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_created_by', 'created_by'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'start_date': _iso(self.start_date),
            'end_date': _iso(self.end_date),
            'budget': self.budget,
            'progress_percentage': self.progress_percentage,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


# ============================================
# 4. ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    __tablename__ = 'project_members'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    role = db.Column(db.String(30), nullable=False, default='member')
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='project_memberships')

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

    def to_dict(self):
        data = self.user.to_brief() if self.user else {'id': self.user_id}
        data.update({
            'membership_id': self.id,
            'project_id': self.project_id,
            'role': self.role,
            'joined_at': _iso(self.joined_at)
        })
        return data


# ============================================
# 5. Milestone 模型
# ============================================
class Milestone(db.Model):
    __tablename__ = 'milestones'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='pending')
    due_date = db.Column(db.Date)
    completion_percentage = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tasks = db.relationship('Task', backref='milestone', lazy=True)
    comments = db.relationship('Comment', backref='milestone', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_milestone_project', 'project_id'),
        db.Index('idx_milestone_due_date', 'due_date'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'name': self.name,
            'description': self.description,
            'status': self.status,
            'due_date': _iso(self.due_date),
            'completion_percentage': self.completion_percentage,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


# ============================================
# 6. Task 模型
# ============================================
class Task(db.Model):
    __tablename__ = 'tasks'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False)
    milestone_id = db.Column(db.String(36), db.ForeignKey('milestones.id', ondelete='SET NULL'))
    parent_task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='CASCADE'))
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='todo')
    priority = db.Column(db.String(20), nullable=False, default='medium')
    type = db.Column(db.String(20), nullable=False, default='task')
    estimated_hours = db.Column(db.Float)
    actual_hours = db.Column(db.Float, default=0)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    due_date = db.Column(db.DateTime)
    assigned_to = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    created_by = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    assignee = db.relationship('User', foreign_keys=[assigned_to], backref='tasks_assigned')
    creator = db.relationship('User', foreign_keys=[created_by])
    subtasks = db.relationship('Task', backref=db.backref('parent_task', remote_side=[id]))
    comments = db.relationship('Comment', backref='task', lazy=True, cascade='all,delete-orphan')
    attachments = db.relationship('Attachment', backref='task', lazy=True, cascade='all,delete-orphan')
    time_logs = db.relationship('TimeLog', backref='task', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_task_project_status', 'project_id', 'status'),
        db.Index('idx_task_assigned_status', 'assigned_to', 'status'),
        db.Index('idx_task_due_date', 'due_date'),
        db.Index('idx_task_milestone', 'milestone_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'milestone_id': self.milestone_id,
            'parent_task_id': self.parent_task_id,
            'title': self.title,
            'description': self.description,
            'status': self.status,
            'priority': self.priority,
            'type': self.type,
            'estimated_hours': self.estimated_hours,
            'actual_hours': self.actual_hours,
            'progress_percentage': self.progress_percentage,
            'due_date': _iso(self.due_date),
            'assigned_to': self.assigned_to,
            'assignee': self.assignee.to_brief() if self.assignee else None,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


# ============================================
# 7. Comment 模型 (task / project / milestone 三擇一)
# ============================================
class Comment(db.Model):
    __tablename__ = 'comments'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    content = db.Column(db.Text, nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='CASCADE'))
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    milestone_id = db.Column(db.String(36), db.ForeignKey('milestones.id', ondelete='CASCADE'))
    parent_comment_id = db.Column(db.String(36), db.ForeignKey('comments.id', ondelete='CASCADE'))
    is_edited = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 自我關聯 (一層回覆)
    replies = db.relationship('Comment', backref=db.backref('parent', remote_side=[id]),
                              order_by='Comment.created_at')
    attachments = db.relationship('Attachment', backref='comment', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_comment_task', 'task_id'),
        db.Index('idx_comment_project', 'project_id'),
    )

    def to_dict(self, include_replies=False):
        data = {
            'id': self.id,
            'content': self.content,
            'user_id': self.user_id,
            'user': self.author.to_brief() if self.author else None,
            'task_id': self.task_id,
            'project_id': self.project_id,
            'milestone_id': self.milestone_id,
            'parent_comment_id': self.parent_comment_id,
            'is_edited': self.is_edited,
            'attachments': [a.to_dict() for a in self.attachments],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }
        if include_replies:
            data['replies'] = [r.to_dict() for r in self.replies]
        return data


# ============================================
# 8. Attachment 模型
# ============================================
class Attachment(db.Model):
    __tablename__ = 'attachments'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    filename = db.Column(db.String(255), nullable=False)
    original_filename = db.Column(db.String(255), nullable=False)
    file_path = db.Column(db.String(500), nullable=False)
    file_size = db.Column(db.Integer)
    mime_type = db.Column(db.String(100))
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='CASCADE'))
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    milestone_id = db.Column(db.String(36), db.ForeignKey('milestones.id', ondelete='CASCADE'))
    comment_id = db.Column(db.String(36), db.ForeignKey('comments.id', ondelete='CASCADE'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'filename': self.filename,
            'original_filename': self.original_filename,
            'file_url': f'/uploads/{self.filename}',
            'file_size': self.file_size,
            'mime_type': self.mime_type,
            'user_id': self.user_id,
            'created_at': _iso(self.created_at)
        }


# ============================================
# 9. TimeLog 模型
# ============================================
class TimeLog(db.Model):
    __tablename__ = 'time_logs'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    task_id = db.Column(db.String(36), db.ForeignKey('tasks.id', ondelete='CASCADE'))
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    description = db.Column(db.Text)
    hours_spent = db.Column(db.Float, nullable=False)
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.DateTime)
    end_time = db.Column(db.DateTime)
    is_billable = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_time_log_user_date', 'user_id', 'date'),
        db.Index('idx_time_log_project', 'project_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'username': self.user.username if self.user else None,
            'task_id': self.task_id,
            'task_title': self.task.title if self.task else None,
            'project_id': self.project_id,
            'project_name': self.project.name if self.project else None,
            'description': self.description,
            'hours_spent': self.hours_spent,
            'date': _iso(self.date),
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'is_billable': self.is_billable,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


# ============================================
# 10. Notification 模型
# ============================================
class Notification(db.Model):
    __tablename__ = 'notifications'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    type = db.Column(db.String(20), nullable=False, default='system')
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON)
    sender_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    related_entity_type = db.Column(db.String(50))
    related_entity_id = db.Column(db.String(36))
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sender = db.relationship('User', foreign_keys=[sender_id])

    __table_args__ = (
        db.Index('idx_notification_user_read', 'user_id', 'is_read'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type,
            'title': self.title,
            'message': self.message,
            'data': self.data,
            'sender': self.sender.to_brief() if self.sender else None,
            'related_entity_type': self.related_entity_type,
            'related_entity_id': self.related_entity_id,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at)
        }


# ============================================
# 11. Invitation 模型
# ============================================
class Invitation(db.Model):
    __tablename__ = 'invitations'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    email = db.Column(db.String(255), nullable=False, index=True)
    role = db.Column(db.String(30), nullable=False, default='member')
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    invited_by = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='pending')
    message = db.Column(db.Text)
    expires_at = db.Column(db.DateTime, nullable=False)
    accepted_at = db.Column(db.DateTime)
    declined_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_expired(self):
        return self.expires_at < datetime.utcnow()

    def to_dict(self, include_token=False):
        data = {
            'id': self.id,
            'email': self.email,
            'role': self.role,
            'project_id': self.project_id,
            'project_name': self.project.name if self.project else None,
            'invited_by': self.invited_by,
            'inviter': self.inviter.to_brief() if self.inviter else None,
            'status': self.status,
            'message': self.message,
            'is_expired': self.is_expired,
            'expires_at': _iso(self.expires_at),
            'accepted_at': _iso(self.accepted_at),
            'declined_at': _iso(self.declined_at),
            'cancelled_at': _iso(self.cancelled_at),
            'created_at': _iso(self.created_at)
        }
        if include_token:
            data['token'] = self.token
        return data


# ============================================
# 12. ActivityLog 模型
# ============================================
class ActivityLog(db.Model):
    __tablename__ = 'activity_logs'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'))
    action = db.Column(db.String(100), nullable=False)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(db.String(36))
    old_values = db.Column(db.JSON)
    new_values = db.Column(db.JSON)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.Index('idx_activity_entity', 'entity_type', 'entity_id'),
    )


# ============================================
# 13. Setting 模型 (使用者 / 專案層級的設定)
# ============================================
class Setting(db.Model):
    __tablename__ = 'settings'

    id = db.Column(db.String(36), primary_key=True, default=generate_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'))
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'))
    setting_key = db.Column(db.String(100), nullable=False)
    setting_value = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'project_id', 'setting_key', name='unique_setting'),
    )
