from flask import request, jsonify, current_app, has_request_context
from marshmallow import ValidationError
from datetime import date, datetime
from math import ceil
from models import db, ActivityLog
from errors import ValidationFailed

# ============================================
# Input Validation
# ============================================

def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages


def load_json(schema_class):
    """讀取 request JSON 並驗證,失敗直接 raise ValidationFailed"""
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationFailed({'body': ['Request body must be JSON']})

    is_valid, result = validate_request_data(schema_class, data)
    if not is_valid:
        raise ValidationFailed(result)
    return result


def parse_date(value, field='date'):
    """解析 YYYY-MM-DD,失敗視為 validation error"""
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationFailed({field: ['Invalid date format, expected YYYY-MM-DD']})

# ============================================
# Response Envelope
# ============================================

def success_response(data=None, message=None, status=200, pagination=None):
    payload = {'success': True}
    if message:
        payload['message'] = message
    if data is not None:
        payload['data'] = data
    if pagination is not None:
        payload['pagination'] = pagination
    return jsonify(payload), status

# ============================================
# Pagination
# ============================================

def get_pagination_args():
    """從 query string 取得 page / limit (有上限)"""
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    page = max(page or 1, 1)
    limit = min(max(limit or 1, 1), current_app.config['MAX_PAGE_SIZE'])
    return page, limit


def build_pagination(page, limit, total):
    total_pages = ceil(total / limit) if limit else 0
    return {
        'currentPage': page,
        'totalPages': total_pages,
        'totalItems': total,
        'itemsPerPage': limit,
        'hasNext': page < total_pages,
        'hasPrev': page > 1
    }


def paginate_query(query):
    """
    對 SQLAlchemy query 分頁

    Returns:
        tuple: (items, pagination dict)
    """
    page, limit = get_pagination_args()
    result = query.paginate(page=page, per_page=limit, error_out=False)
    return result.items, build_pagination(page, limit, result.total)

# ============================================
# Activity Log
# ============================================

def log_activity(user_id, action, entity_type, entity_id, old_values=None, new_values=None):
    """
    加一筆 ActivityLog 到目前的 session

    不自己 commit,跟著呼叫端的 transaction 一起寫入
    """
    in_request = has_request_context()
    activity = ActivityLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_values=old_values,
        new_values=new_values,
        ip_address=request.remote_addr if in_request else None,
        user_agent=(request.headers.get('User-Agent') or '')[:255] if in_request else None
    )
    db.session.add(activity)
    return activity


def serialize_changes(values):
    """ActivityLog 的 JSON 欄位不能直接存 date / datetime"""
    result = {}
    for key, value in values.items():
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        result[key] = value
    return result
