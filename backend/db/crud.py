"""
数据库 CRUD 操作
"""
import json
import uuid
from typing import Optional, List
from datetime import datetime, timedelta
from .database import get_db
from .models import Project, QueueItem, QueueStats, HistoryRecord

# update_queue_item 允许更新的列
QUEUE_UPDATABLE_FIELDS = {
    "status", "progress", "task_id", "generated_prompt", "ai_model",
    "original_url", "result_url", "error_message", "started_at", "completed_at",
}

# 仍在处理中的状态（卡住检测）
ACTIVE_STATUSES = ("processing", "optimizing")


def _now() -> str:
    return datetime.now().isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


# ==================== 项目操作 ====================

def _row_to_project(row) -> Project:
    data = dict(row)
    for key in ("prompt_template", "studio_preset"):
        if data.get(key):
            data[key] = json.loads(data[key])
    return Project(**data)


def create_project(
    organization_id: str,
    name: str,
    custom_prompt: Optional[str] = None,
    ai_model: Optional[str] = None,
    prompt_template: Optional[dict] = None,
    studio_preset: Optional[dict] = None
) -> Project:
    """创建项目"""
    project_id = _new_id()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO projects
                (id, organization_id, name, custom_prompt, ai_model, prompt_template, studio_preset, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            project_id,
            organization_id,
            name,
            custom_prompt,
            ai_model,
            json.dumps(prompt_template, ensure_ascii=False) if prompt_template else None,
            json.dumps(studio_preset, ensure_ascii=False) if studio_preset else None,
            _now(),
        ))

    return get_project(project_id)


def get_project(project_id: str) -> Optional[Project]:
    """通过ID获取项目"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM projects WHERE id = ?', (project_id,))
        row = cursor.fetchone()
        if row:
            return _row_to_project(row)
        return None


# ==================== 队列操作 ====================

def create_queue_item(
    organization_id: str,
    project_id: str,
    file_name: str,
    file_id: Optional[str] = None,
    source_url: Optional[str] = None
) -> QueueItem:
    """创建队列项，初始状态 queued / 进度 0"""
    item_id = _new_id()
    now = _now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO processing_queue
                (id, organization_id, project_id, file_id, file_name, source_url, status, progress, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 'queued', 0, ?, ?)
        ''', (item_id, organization_id, project_id, file_id, file_name, source_url, now, now))

    return get_queue_item(item_id)


def get_queue_item(item_id: str) -> Optional[QueueItem]:
    """通过ID获取队列项"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM processing_queue WHERE id = ?', (item_id,))
        row = cursor.fetchone()
        if row:
            return QueueItem(**dict(row))
        return None


def claim_queue_item(item_id: str) -> bool:
    """
    认领队列项（queued / failed -> processing）

    条件更新保证同一队列项同一时间只被一个处理流程占用。

    Returns:
        True 表示认领成功，False 表示不存在或已在处理/已完成
    """
    now = _now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE processing_queue
            SET status = 'processing', progress = 0, started_at = ?, updated_at = ?,
                error_message = NULL, completed_at = NULL
            WHERE id = ? AND status IN ('queued', 'failed')
        ''', (now, now, item_id))
        return cursor.rowcount > 0


def update_queue_item(item_id: str, **fields) -> bool:
    """
    更新队列项字段

    Args:
        item_id: 队列项ID
        **fields: 需要更新的列（仅限 QUEUE_UPDATABLE_FIELDS）

    Returns:
        True 表示更新成功
    """
    unknown = set(fields) - QUEUE_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"不支持更新的字段: {sorted(unknown)}")

    fields["updated_at"] = _now()
    assignments = ", ".join(f"{key} = ?" for key in fields)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            f'UPDATE processing_queue SET {assignments} WHERE id = ?',
            (*fields.values(), item_id)
        )
        return cursor.rowcount > 0


def retry_queue_item(item_id: str) -> bool:
    """重试失败项（failed -> queued）"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            UPDATE processing_queue
            SET status = 'queued', progress = 0, error_message = NULL,
                task_id = NULL, started_at = NULL, completed_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'failed'
        ''', (_now(), item_id))
        return cursor.rowcount > 0


def reset_stuck_items(older_than_minutes: int = 10) -> int:
    """
    重置卡住的队列项（处理中超过指定时间 -> queued）

    Returns:
        被重置的队列项数量
    """
    cutoff = (datetime.now() - timedelta(minutes=older_than_minutes)).isoformat()
    placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f'''
            UPDATE processing_queue
            SET status = 'queued', progress = 0, task_id = NULL,
                error_message = 'Reset after being stuck in processing', updated_at = ?
            WHERE status IN ({placeholders}) AND started_at IS NOT NULL AND started_at < ?
        ''', (_now(), *ACTIVE_STATUSES, cutoff))
        return cursor.rowcount


def list_queue_items(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = 100
) -> List[QueueItem]:
    """
    获取队列项列表

    Args:
        status: 按状态过滤
        project_id: 按项目过滤
        limit: 返回数量限制

    Returns:
        队列项列表，按创建时间正序（先进先出）
    """
    clauses = []
    params: list = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if project_id:
        clauses.append("project_id = ?")
        params.append(project_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            f'SELECT * FROM processing_queue {where} ORDER BY created_at ASC LIMIT ?',
            (*params, limit)
        )
        return [QueueItem(**dict(row)) for row in cursor.fetchall()]


def queue_stats(project_id: Optional[str] = None) -> QueueStats:
    """按状态统计队列项数量"""
    with get_db() as conn:
        cursor = conn.cursor()
        if project_id:
            cursor.execute(
                'SELECT status, COUNT(*) AS count FROM processing_queue WHERE project_id = ? GROUP BY status',
                (project_id,)
            )
        else:
            cursor.execute('SELECT status, COUNT(*) AS count FROM processing_queue GROUP BY status')
        rows = cursor.fetchall()

    stats = QueueStats()
    for row in rows:
        status, count = row["status"], row["count"]
        stats.total += count
        if status in ACTIVE_STATUSES:
            stats.processing += count
        elif hasattr(stats, status):
            setattr(stats, status, getattr(stats, status) + count)
    return stats


# ==================== 历史操作 ====================

def create_history_record(
    organization_id: str,
    project_id: str,
    status: str,
    queue_item_id: Optional[str] = None,
    file_id: Optional[str] = None,
    file_name: Optional[str] = None,
    original_url: Optional[str] = None,
    optimized_url: Optional[str] = None,
    file_size_before: Optional[int] = None,
    file_size_after: Optional[int] = None,
    processing_time_sec: Optional[int] = None,
    generated_prompt: Optional[str] = None,
    ai_model: Optional[str] = None,
    task_id: Optional[str] = None,
    tokens_used: int = 0
) -> HistoryRecord:
    """创建处理历史记录"""
    record_id = _new_id()
    now = _now()
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('''
            INSERT INTO processing_history
                (id, organization_id, project_id, queue_item_id, file_id, file_name,
                 original_url, optimized_url, file_size_before, file_size_after,
                 processing_time_sec, generated_prompt, ai_model, task_id,
                 tokens_used, status, completed_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            record_id, organization_id, project_id, queue_item_id, file_id, file_name,
            original_url, optimized_url, file_size_before, file_size_after,
            processing_time_sec, generated_prompt, ai_model, task_id,
            tokens_used, status, now, now,
        ))

    return get_history_record(record_id)


def get_history_record(record_id: str) -> Optional[HistoryRecord]:
    """通过ID获取历史记录"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM processing_history WHERE id = ?', (record_id,))
        row = cursor.fetchone()
        if row:
            return HistoryRecord(**dict(row))
        return None


def list_history(project_id: str, limit: int = 50, offset: int = 0) -> List[HistoryRecord]:
    """获取项目的处理历史，按完成时间倒序"""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            'SELECT * FROM processing_history WHERE project_id = ? ORDER BY created_at DESC LIMIT ? OFFSET ?',
            (project_id, limit, offset)
        )
        return [HistoryRecord(**dict(row)) for row in cursor.fetchall()]
