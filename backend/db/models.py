"""
数据模型定义
"""
from pydantic import BaseModel
from typing import Optional


# ==================== 项目模型 ====================

class Project(BaseModel):
    """项目完整信息"""
    id: str
    organization_id: str
    name: str
    custom_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    prompt_template: Optional[dict] = None   # base_prompt / style / background / lighting
    studio_preset: Optional[dict] = None     # 相机、灯光、背景、珠宝、构图参数
    created_at: Optional[str] = None


# ==================== 队列模型 ====================

class QueueItem(BaseModel):
    """处理队列项"""
    id: str
    organization_id: str
    project_id: str
    file_id: Optional[str] = None
    file_name: str
    source_url: Optional[str] = None
    status: str                # queued / processing / optimizing / completed / completed_passthrough / failed
    progress: int              # 0-100
    task_id: Optional[str] = None
    generated_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    original_url: Optional[str] = None
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None


class QueueStats(BaseModel):
    """队列统计"""
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    completed_passthrough: int = 0
    failed: int = 0


# ==================== 历史模型 ====================

class HistoryRecord(BaseModel):
    """处理历史记录"""
    id: str
    organization_id: str
    project_id: str
    queue_item_id: Optional[str] = None
    file_id: Optional[str] = None
    file_name: Optional[str] = None
    original_url: Optional[str] = None
    optimized_url: Optional[str] = None
    file_size_before: Optional[int] = None
    file_size_after: Optional[int] = None
    processing_time_sec: Optional[int] = None
    generated_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    task_id: Optional[str] = None
    tokens_used: int = 0
    status: str                # completed / completed_passthrough / failed
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
