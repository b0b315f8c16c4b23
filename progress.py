"""
進度計算

compute_progress 是純函數;讀取時算出來的值要存回資料庫,
另外呼叫 persist_progress (只有值改變時才寫入)
"""
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import func, case
from models import db, Task, TimeLog
import logging

logger = logging.getLogger(__name__)


def round_half_up(value):
    """0.5 一律進位 (Python 的 round 是 banker's rounding)"""
    return int(Decimal(str(value)).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def compute_progress(estimated_hours, logged_hours, completed_count, total_count):
    """
    進度百分比

    - 有預估工時: min(100, round(100 * logged / estimated)),沒登記工時就是 0
    - 沒有預估工時: round(100 * completed / total)
    - 沒有任何任務: 0
    """
    estimated_hours = float(estimated_hours or 0)
    logged_hours = float(logged_hours or 0)

    if estimated_hours > 0:
        if logged_hours <= 0:
            return 0
        return min(100, round_half_up(100 * logged_hours / estimated_hours))

    if total_count:
        return round_half_up(100 * completed_count / total_count)

    return 0

# ============================================
# 聚合查詢
# ============================================

def task_counts(*criteria):
    total, completed = db.session.query(
        func.count(Task.id),
        func.coalesce(func.sum(case((Task.status == 'completed', 1), else_=0)), 0)
    ).filter(*criteria).one()
    return int(completed or 0), int(total or 0)


def project_progress(project_id):
    estimated = db.session.query(
        func.coalesce(func.sum(Task.estimated_hours), 0)
    ).filter(Task.project_id == project_id).scalar()

    logged = db.session.query(
        func.coalesce(func.sum(TimeLog.hours_spent), 0)
    ).join(Task, TimeLog.task_id == Task.id).filter(Task.project_id == project_id).scalar()

    completed, total = task_counts(Task.project_id == project_id)
    return compute_progress(estimated, logged, completed, total)


def milestone_completion(milestone_id):
    completed, total = task_counts(Task.milestone_id == milestone_id)
    return compute_progress(0, 0, completed, total)

# ============================================
# Write-behind
# ============================================

def persist_progress(entity, value, field='progress_percentage'):
    """
    值改變時才寫回並 commit

    Returns:
        bool: 有沒有寫入
    """
    if getattr(entity, field) == value:
        return False

    setattr(entity, field, value)
    db.session.commit()
    logger.info(f"{type(entity).__name__} {entity.id} {field} updated to {value}")
    return True
