from flask import Blueprint, request, Response
from flask_jwt_extended import jwt_required
from sqlalchemy import func, case, or_
from marshmallow import Schema, fields, validate, validates, ValidationError
from datetime import date, timedelta
import csv
import io
from models import db, TimeLog, Task, Project, User
from auth import get_current_user
from access import (require_project_access, require_owner_or_manager, require_entity_access,
                    visible_project_ids, require_admin)
from errors import NotFound, ValidationFailed
from utils import load_json, success_response, paginate_query, log_activity, serialize_changes, parse_date
import logging

time_logs_bp = Blueprint('time_logs', __name__)
logger = logging.getLogger(__name__)

CSV_HEADERS = ['Date', 'User', 'Project', 'Task', 'Description', 'Hours', 'Billable', 'Created At']

MAX_TIMESHEET_DAYS = 366

CATEGORY = case(
    (TimeLog.task_id.isnot(None), 'Task'),
    else_='Project'
)

# ============================================
# Input Validation Schemas
# ============================================

class TimeLogFieldsMixin:

    @validates('hours_spent')
    def validate_hours(self, value, **kwargs):
        if value <= 0:
            raise ValidationError('Hours spent must be greater than 0')

    @validates('date')
    def validate_date(self, value, **kwargs):
        if value > date.today():
            raise ValidationError('Cannot log time for future dates')


class CreateTimeLogSchema(TimeLogFieldsMixin, Schema):
    task_id = fields.Str(allow_none=True)
    project_id = fields.Str(allow_none=True)
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    hours_spent = fields.Float(required=True, error_messages={'required': 'Hours spent is required'})
    date = fields.Date(load_default=date.today)
    start_time = fields.DateTime(allow_none=True)
    end_time = fields.DateTime(allow_none=True)
    is_billable = fields.Bool(load_default=False)


class UpdateTimeLogSchema(TimeLogFieldsMixin, Schema):
    description = fields.Str(validate=validate.Length(max=2000), allow_none=True)
    hours_spent = fields.Float()
    date = fields.Date()
    start_time = fields.DateTime(allow_none=True)
    end_time = fields.DateTime(allow_none=True)
    is_billable = fields.Bool()

# ============================================
# 篩選條件 (所有聚合 API 共用)
# ============================================

def time_log_criteria(user, user_id=None, project_id=None, task_id=None):
    """
    組出 TimeLog 的篩選條件

    query string 的 user_id / project_id / task_id / start_date / end_date / is_billable
    以 AND 合併;非 admin 只看得到自己專案裡的紀錄和自己的紀錄
    """
    args = request.args
    criteria = []

    allowed_ids = visible_project_ids(user)
    if allowed_ids is not None:
        criteria.append(or_(TimeLog.project_id.in_(allowed_ids), TimeLog.user_id == user.id))

    user_id = user_id or args.get('user_id')
    project_id = project_id or args.get('project_id')
    task_id = task_id or args.get('task_id')

    if user_id:
        criteria.append(TimeLog.user_id == user_id)
    if project_id:
        criteria.append(TimeLog.project_id == project_id)
    if task_id:
        criteria.append(TimeLog.task_id == task_id)
    if args.get('start_date'):
        criteria.append(TimeLog.date >= parse_date(args['start_date'], 'start_date'))
    if args.get('end_date'):
        criteria.append(TimeLog.date <= parse_date(args['end_date'], 'end_date'))
    if args.get('is_billable') is not None:
        criteria.append(TimeLog.is_billable.is_(args['is_billable'].lower() == 'true'))

    return criteria


def ordered_logs(*criteria):
    return TimeLog.query.filter(*criteria).order_by(TimeLog.date.desc(), TimeLog.created_at.desc())


def get_time_log_or_404(time_log_id):
    time_log = db.session.get(TimeLog, time_log_id)
    if not time_log:
        raise NotFound('Time log')
    return time_log


def require_time_log_owner_or_manager(time_log, user, message):
    require_owner_or_manager(time_log.project_id or time_log.task.project_id, user,
                             time_log.user_id, message)


def hours_summary(*criteria):
    row = db.session.query(
        func.coalesce(func.sum(TimeLog.hours_spent), 0),
        func.coalesce(func.sum(case((TimeLog.is_billable.is_(True), TimeLog.hours_spent), else_=0)), 0),
        func.count(TimeLog.id)
    ).filter(*criteria).one()
    total, billable, entries = float(row[0] or 0), float(row[1] or 0), row[2] or 0
    return {
        'total_hours': total,
        'billable_hours': billable,
        'non_billable_hours': total - billable,
        'total_entries': entries
    }


def time_logs_to_csv(time_logs):
    """文字欄位一律加引號,內容裡的引號會變成兩個"""
    output = io.StringIO()
    writer = csv.writer(output, quoting=csv.QUOTE_NONNUMERIC, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for log in time_logs:
        writer.writerow([
            log.date.isoformat(),
            log.user.username if log.user else '',
            log.project.name if log.project else '',
            log.task.title if log.task else '',
            log.description or '',
            float(log.hours_spent),
            'Yes' if log.is_billable else 'No',
            log.created_at.isoformat() if log.created_at else ''
        ])
    return output.getvalue()

# ============================================
# CRUD
# ============================================

@time_logs_bp.route('', methods=['POST'])
@jwt_required()
def create_time_log():
    """
    登記工時

    - hours_spent 必須大於 0
    - 不能登記未來的日期
    - 必須掛在 task 或 project 底下
    - 有 task 時 project 從 task 帶出
    """
    current_user = get_current_user()
    result = load_json(CreateTimeLogSchema)

    if not result.get('task_id') and not result.get('project_id'):
        raise ValidationFailed({'task_id': ['Time log must be associated with a task or project']})

    if result.get('task_id'):
        task = db.session.get(Task, result['task_id'])
        if not task:
            raise NotFound('Task')
        result['project_id'] = task.project_id

    require_project_access(result['project_id'], current_user)

    if result.get('start_time') and result.get('end_time') and result['end_time'] <= result['start_time']:
        raise ValidationFailed({'end_time': ['End time must be after start time']})

    time_log = TimeLog(user_id=current_user.id, **result)
    db.session.add(time_log)
    db.session.flush()
    log_activity(current_user.id, 'create', 'time_log', time_log.id, new_values=serialize_changes(result))
    db.session.commit()

    logger.info(f"Time logged: {time_log.hours_spent}h by user {current_user.email}")
    return success_response(time_log.to_dict(), 'Time log created successfully', 201)


@time_logs_bp.route('', methods=['GET'])
@jwt_required()
def get_time_logs():
    current_user = get_current_user()
    items, pagination = paginate_query(ordered_logs(*time_log_criteria(current_user)))
    return success_response([log.to_dict() for log in items], pagination=pagination)


@time_logs_bp.route('/<time_log_id>', methods=['GET'])
@jwt_required()
def get_time_log(time_log_id):
    current_user = get_current_user()
    time_log = get_time_log_or_404(time_log_id)
    if time_log.user_id != current_user.id:
        require_entity_access(time_log, current_user)
    return success_response(time_log.to_dict())


@time_logs_bp.route('/<time_log_id>', methods=['PUT', 'PATCH'])
@jwt_required()
def update_time_log(time_log_id):
    current_user = get_current_user()
    time_log = get_time_log_or_404(time_log_id)
    require_time_log_owner_or_manager(time_log, current_user, 'You can only update your own time logs')
    result = load_json(UpdateTimeLogSchema)

    old_values = {field: getattr(time_log, field) for field in result}
    for field, value in result.items():
        setattr(time_log, field, value)

    log_activity(current_user.id, 'update', 'time_log', time_log.id,
                 old_values=serialize_changes(old_values), new_values=serialize_changes(result))
    db.session.commit()
    return success_response(time_log.to_dict(), 'Time log updated successfully')


@time_logs_bp.route('/<time_log_id>', methods=['DELETE'])
@jwt_required()
def delete_time_log(time_log_id):
    current_user = get_current_user()
    time_log = get_time_log_or_404(time_log_id)
    require_time_log_owner_or_manager(time_log, current_user, 'You can only delete your own time logs')

    log_activity(current_user.id, 'delete', 'time_log', time_log.id,
                 old_values={'hours_spent': time_log.hours_spent, 'date': time_log.date.isoformat()})
    db.session.delete(time_log)
    db.session.commit()
    return success_response(message='Time log deleted successfully')

# ============================================
# 依 task / project / user / 日期查詢
# ============================================

@time_logs_bp.route('/task/<task_id>', methods=['GET'])
@jwt_required()
def get_task_time_logs(task_id):
    current_user = get_current_user()
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFound('Task')
    require_project_access(task.project_id, current_user)

    logs = ordered_logs(TimeLog.task_id == task_id).all()
    return success_response({
        'time_logs': [log.to_dict() for log in logs],
        'total_hours': float(sum(log.hours_spent for log in logs))
    })


@time_logs_bp.route('/project/<project_id>', methods=['GET'])
@jwt_required()
def get_project_time_logs(project_id):
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    criteria = [TimeLog.project_id == project_id]
    if request.args.get('user_id'):
        criteria.append(TimeLog.user_id == request.args['user_id'])

    items, pagination = paginate_query(ordered_logs(*criteria))
    return success_response([log.to_dict() for log in items], pagination=pagination)


@time_logs_bp.route('/project/<project_id>/summary', methods=['GET'])
@jwt_required()
def get_project_time_summary(project_id):
    """專案工時統計:總計、每人、每個任務"""
    current_user = get_current_user()
    require_project_access(project_id, current_user)

    criteria = [TimeLog.project_id == project_id]
    summary = hours_summary(*criteria)

    by_user = db.session.query(
        User.id, User.username,
        func.sum(TimeLog.hours_spent), func.count(TimeLog.id)
    ).join(TimeLog, TimeLog.user_id == User.id).filter(*criteria)\
        .group_by(User.id, User.username).order_by(func.sum(TimeLog.hours_spent).desc()).all()

    by_task = db.session.query(
        Task.id, Task.title, Task.estimated_hours,
        func.sum(TimeLog.hours_spent), func.count(TimeLog.id)
    ).join(TimeLog, TimeLog.task_id == Task.id).filter(*criteria)\
        .group_by(Task.id, Task.title, Task.estimated_hours)\
        .order_by(func.sum(TimeLog.hours_spent).desc()).all()

    summary.update({
        'user_breakdown': [
            {'user_id': uid, 'username': username, 'total_hours': float(hours or 0), 'entries': count}
            for uid, username, hours, count in by_user
        ],
        'task_breakdown': [
            {'task_id': tid, 'title': title, 'estimated_hours': estimated,
             'total_hours': float(hours or 0), 'entries': count}
            for tid, title, estimated, hours, count in by_task
        ]
    })
    return success_response(summary)


@time_logs_bp.route('/user/<user_id>', methods=['GET'])
@jwt_required()
def get_user_time_logs(user_id):
    current_user = get_current_user()
    if user_id != current_user.id:
        require_admin(current_user)

    criteria = time_log_criteria(current_user, user_id=user_id)
    items, pagination = paginate_query(ordered_logs(*criteria))
    return success_response([log.to_dict() for log in items], pagination=pagination)


@time_logs_bp.route('/date/<log_date>', methods=['GET'])
@jwt_required()
def get_time_logs_by_date(log_date):
    """我在某一天的工時"""
    current_user = get_current_user()
    day = parse_date(log_date)

    logs = ordered_logs(TimeLog.user_id == current_user.id, TimeLog.date == day).all()
    return success_response({
        'date': day.isoformat(),
        'time_logs': [log.to_dict() for log in logs],
        'total_hours': float(sum(log.hours_spent for log in logs))
    })


@time_logs_bp.route('/range/<start>/<end>', methods=['GET'])
@jwt_required()
def get_time_logs_by_range(start, end):
    current_user = get_current_user()
    start_date, end_date = parse_date(start, 'start_date'), parse_date(end, 'end_date')
    if end_date < start_date:
        raise ValidationFailed({'end_date': ['End date must be after start date']})

    logs = ordered_logs(
        TimeLog.user_id == current_user.id,
        TimeLog.date >= start_date,
        TimeLog.date <= end_date
    ).all()
    return success_response({
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'time_logs': [log.to_dict() for log in logs],
        'total_hours': float(sum(log.hours_spent for log in logs))
    })

# ============================================
# 聚合報表
# ============================================

@time_logs_bp.route('/summary', methods=['GET'])
@jwt_required()
def get_time_summary():
    current_user = get_current_user()
    criteria = time_log_criteria(current_user)

    summary = hours_summary(*criteria)
    uniques = db.session.query(
        func.count(func.distinct(TimeLog.user_id)),
        func.count(func.distinct(TimeLog.project_id)),
        func.count(func.distinct(TimeLog.task_id))
    ).filter(*criteria).one()

    summary.update({
        'unique_users': uniques[0] or 0,
        'unique_projects': uniques[1] or 0,
        'unique_tasks': uniques[2] or 0
    })
    return success_response(summary)


@time_logs_bp.route('/billable', methods=['GET'])
@jwt_required()
def get_billable_time_logs():
    current_user = get_current_user()
    criteria = time_log_criteria(current_user) + [TimeLog.is_billable.is_(True)]

    items, pagination = paginate_query(ordered_logs(*criteria))
    return success_response({
        'time_logs': [log.to_dict() for log in items],
        'total_billable_hours': hours_summary(*criteria)['total_hours']
    }, pagination=pagination)


@time_logs_bp.route('/categories', methods=['GET'])
@jwt_required()
def get_time_by_category():
    """Task / Project 兩類的工時"""
    current_user = get_current_user()
    criteria = time_log_criteria(current_user)

    rows = db.session.query(
        CATEGORY.label('category'),
        func.sum(TimeLog.hours_spent),
        func.count(TimeLog.id)
    ).filter(*criteria).group_by(CATEGORY).all()

    return success_response([
        {'category': category, 'total_hours': float(hours or 0), 'entries': count}
        for category, hours, count in sorted(rows, key=lambda r: -(r[1] or 0))
    ])


@time_logs_bp.route('/users', methods=['GET'])
@jwt_required()
def get_time_by_user():
    current_user = get_current_user()
    criteria = time_log_criteria(current_user)

    rows = db.session.query(
        User.id, User.username, User.first_name, User.last_name,
        func.sum(TimeLog.hours_spent),
        func.sum(case((TimeLog.is_billable.is_(True), TimeLog.hours_spent), else_=0)),
        func.count(TimeLog.id)
    ).join(TimeLog, TimeLog.user_id == User.id).filter(*criteria)\
        .group_by(User.id, User.username, User.first_name, User.last_name)\
        .order_by(func.sum(TimeLog.hours_spent).desc()).all()

    return success_response([
        {
            'user_id': uid, 'username': username, 'first_name': first, 'last_name': last,
            'total_hours': float(hours or 0), 'billable_hours': float(billable or 0), 'entries': count
        }
        for uid, username, first, last, hours, billable, count in rows
    ])


@time_logs_bp.route('/projects', methods=['GET'])
@jwt_required()
def get_time_by_project():
    current_user = get_current_user()
    criteria = time_log_criteria(current_user)

    rows = db.session.query(
        Project.id, Project.name,
        func.sum(TimeLog.hours_spent),
        func.sum(case((TimeLog.is_billable.is_(True), TimeLog.hours_spent), else_=0)),
        func.count(TimeLog.id),
        func.count(func.distinct(TimeLog.user_id))
    ).join(TimeLog, TimeLog.project_id == Project.id).filter(*criteria)\
        .group_by(Project.id, Project.name)\
        .order_by(func.sum(TimeLog.hours_spent).desc()).all()

    return success_response([
        {
            'project_id': pid, 'project_name': name, 'total_hours': float(hours or 0),
            'billable_hours': float(billable or 0), 'entries': count, 'unique_users': users
        }
        for pid, name, hours, billable, count, users in rows
    ])


@time_logs_bp.route('/export', methods=['GET'])
@jwt_required()
def export_time_logs():
    """匯出 CSV"""
    current_user = get_current_user()
    logs = ordered_logs(*time_log_criteria(current_user)).all()

    filename = f'time-logs-{date.today().isoformat()}.csv'
    return Response(
        time_logs_to_csv(logs),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


@time_logs_bp.route('/timesheet', methods=['GET'])
@jwt_required()
def get_timesheet():
    """
    工時表

    預設是當週 (週一到週日);admin 可以用 user_id 看別人
    """
    current_user = get_current_user()

    user_id = request.args.get('user_id') or current_user.id
    if user_id != current_user.id:
        require_admin(current_user)

    today = date.today()
    start_date = parse_date(request.args['start_date'], 'start_date') \
        if request.args.get('start_date') else today - timedelta(days=today.weekday())
    # date.max 附近不能再往後加
    default_end = start_date + timedelta(days=min(6, (date.max - start_date).days))
    end_date = parse_date(request.args['end_date'], 'end_date') \
        if request.args.get('end_date') else default_end
    if end_date < start_date:
        raise ValidationFailed({'end_date': ['End date must be after start date']})
    span = (end_date - start_date).days + 1
    if span > MAX_TIMESHEET_DAYS:
        raise ValidationFailed({'end_date': [f'Timesheet range cannot exceed {MAX_TIMESHEET_DAYS} days']})

    logs = TimeLog.query.filter(
        TimeLog.user_id == user_id,
        TimeLog.date >= start_date,
        TimeLog.date <= end_date
    ).order_by(TimeLog.date.asc(), TimeLog.created_at.asc()).all()

    daily = {(start_date + timedelta(days=offset)).isoformat(): 0.0 for offset in range(span)}

    projects, tasks = {}, {}
    for log in logs:
        daily[log.date.isoformat()] += log.hours_spent

        project_entry = projects.setdefault(log.project_id, {
            'project_id': log.project_id,
            'project_name': log.project.name,
            'total_hours': 0.0
        })
        project_entry['total_hours'] += log.hours_spent

        if log.task_id:
            task_entry = tasks.setdefault(log.task_id, {
                'task_id': log.task_id,
                'title': log.task.title,
                'project_id': log.project_id,
                'total_hours': 0.0
            })
            task_entry['total_hours'] += log.hours_spent

    return success_response({
        'user_id': user_id,
        'start_date': start_date.isoformat(),
        'end_date': end_date.isoformat(),
        'total_hours': float(sum(log.hours_spent for log in logs)),
        'billable_hours': float(sum(log.hours_spent for log in logs if log.is_billable)),
        'daily_breakdown': [{'date': d, 'total_hours': h} for d, h in daily.items()],
        'project_breakdown': list(projects.values()),
        'task_breakdown': list(tasks.values()),
        'time_logs': [log.to_dict() for log in logs]
    })
