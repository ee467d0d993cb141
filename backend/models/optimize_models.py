#!/usr/bin/env python3
"""
优化相关的数据模型
"""

from pydantic import BaseModel, Field
from typing import Optional, List


class OptimizeSettings(BaseModel):
    """增强选项"""
    enhance_quality: bool = False
    remove_background: bool = False
    enhance_lighting: bool = False
    enhance_colors: bool = False


class OptimizeRequest(BaseModel):
    """单图优化请求模型（image_url 与 file_id 二选一）"""
    image_url: Optional[str] = None
    file_id: Optional[str] = None
    prompt: Optional[str] = None
    settings: Optional[OptimizeSettings] = None
    ai_model: Optional[str] = None
    aspect_ratio: Optional[str] = None


class ProcessImageRequest(BaseModel):
    """处理单个队列项"""
    queue_item_id: str


class ProcessQueueRequest(BaseModel):
    """批量处理队列（不传 queue_item_ids 时取最早的 batch_size 个 queued 项）"""
    queue_item_ids: Optional[List[str]] = None
    batch_size: int = Field(default=5, ge=1, le=50)


class CreateQueueItemRequest(BaseModel):
    """创建队列项（file_id 与 source_url 二选一）"""
    project_id: str
    file_name: str
    file_id: Optional[str] = None
    source_url: Optional[str] = None


class CreateProjectRequest(BaseModel):
    """创建项目"""
    name: str
    organization_id: Optional[str] = None
    custom_prompt: Optional[str] = None
    ai_model: Optional[str] = None
    prompt_template: Optional[dict] = None
    studio_preset: Optional[dict] = None


class ResetStuckRequest(BaseModel):
    older_than_minutes: int = Field(default=10, ge=1)


class ProcessQueueResponse(BaseModel):
    """批量处理响应模型"""
    success: bool
    message: str
    queue_item_ids: List[str]
