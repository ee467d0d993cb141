#!/usr/bin/env python3
"""
珠宝图片AI优化系统 - FastAPI后端服务
提供单图优化、队列处理、处理历史等API接口
"""

import os
from pathlib import Path
from typing import Optional
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, BackgroundTasks, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

# 导入核心模块
from backend.core.image_optimizer import ImageOptimizer, OptimizeRequestError
from backend.core.image_fetcher import ImageFetcher
from backend.core.queue_processor import (
    QUEUE_CONCURRENCY,
    QueueProcessor,
    QueueItemBusy,
    QueueItemNotFound,
)
from backend.utils.logger import ALERT_LOGGER_NAME, setup_logger
from backend.utils.storage import STATIC_PREFIX, StorageManager
from backend.utils.auth import get_current_user
from backend.models.optimize_models import (
    OptimizeRequest,
    ProcessImageRequest,
    ProcessQueueRequest,
    ProcessQueueResponse,
    CreateQueueItemRequest,
    CreateProjectRequest,
    ResetStuckRequest,
)
from backend.db import init_db, crud

load_dotenv()

# ==================== 配置 ====================
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs")))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

# 确保目录存在
for dir_path in [DATA_DIR, LOGS_DIR]:
    dir_path.mkdir(parents=True, exist_ok=True)

# 设置日志
logger = setup_logger("api", LOGS_DIR / "api.log")
setup_logger("kie", LOGS_DIR / "kie.log")
setup_logger("queue", LOGS_DIR / "queue.log")
setup_logger(ALERT_LOGGER_NAME, LOGS_DIR / "alerts.log")

storage = StorageManager(DATA_DIR, PUBLIC_BASE_URL)
fetcher = ImageFetcher()
optimizer = ImageOptimizer(fetcher=fetcher)
queue_processor = QueueProcessor(optimizer, storage, fetcher, logs_dir=LOGS_DIR / "queue")


def get_optimizer() -> ImageOptimizer:
    return optimizer


def get_queue_processor() -> QueueProcessor:
    return queue_processor


# ==================== FastAPI 应用 ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("🚀 API服务启动")
    init_db()
    logger.info("📦 数据库初始化完成")
    if not optimizer.api_key:
        logger.warning("⚠️ KIE_AI_API_KEY 未配置，所有图片将原样返回")
    yield
    logger.info("👋 API服务关闭")


app = FastAPI(
    title="珠宝图片AI优化系统",
    description="基于 Kie.ai Flux Kontext 的珠宝商品图优化API",
    version="1.0.0",
    lifespan=lifespan
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 静态文件服务（原图与优化结果）
app.mount(STATIC_PREFIX, StaticFiles(directory=str(storage.bucket_dir)), name="processed-images")


# ==================== API 路由 ====================

@app.get("/health")
async def health():
    """健康检查"""
    return {
        "status": "ok",
        "message": "珠宝图片AI优化系统 API v1.0",
        "kie_configured": bool(optimizer.api_key)
    }


# ==================== 单图优化 ====================

@app.post("/api/optimize-image")
async def optimize_image(
    request: OptimizeRequest,
    current_user: dict = Depends(get_current_user),
    image_optimizer: ImageOptimizer = Depends(get_optimizer)
):
    """
    优化单张图片

    请求参数:
    - image_url / file_id: 二选一（同时提供时使用 image_url）
    - prompt: 自定义提示词（可选）
    - settings: 增强选项（可选）

    返回 success 结构或 passthrough 结构；缺少图片返回 400
    """
    try:
        return await image_optimizer.optimize(
            image_url=request.image_url,
            file_id=request.file_id,
            prompt=request.prompt,
            settings=request.settings.model_dump() if request.settings else None,
            ai_model=request.ai_model,
            aspect_ratio=request.aspect_ratio,
        )
    except OptimizeRequestError as e:
        logger.warning(f"❌ 优化请求无效 ({e.status_code}): {e.message}")
        return JSONResponse(status_code=e.status_code, content={"error": e.message})


# ==================== 队列处理 ====================

@app.post("/api/process-image")
async def process_image(
    request: ProcessImageRequest,
    current_user: dict = Depends(get_current_user),
    processor: QueueProcessor = Depends(get_queue_processor)
):
    """同步处理单个队列项"""
    logger.info(f"📥 处理队列项: {request.queue_item_id}")
    try:
        return await processor.process(request.queue_item_id)
    except QueueItemNotFound:
        raise HTTPException(status_code=404, detail="Queue item not found")
    except QueueItemBusy as e:
        raise HTTPException(status_code=409, detail=f"Queue item is already {e.status}")


@app.post("/api/process-queue", response_model=ProcessQueueResponse)
async def process_queue(
    request: ProcessQueueRequest,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(get_current_user),
    processor: QueueProcessor = Depends(get_queue_processor)
):
    """后台批量处理队列项"""
    queue_item_ids = request.queue_item_ids
    if not queue_item_ids:
        queue_item_ids = [item.id for item in crud.list_queue_items(status="queued", limit=request.batch_size)]

    if not queue_item_ids:
        return ProcessQueueResponse(success=True, message="No queued items", queue_item_ids=[])

    background_tasks.add_task(processor.process_batch, queue_item_ids, QUEUE_CONCURRENCY)
    logger.info(f"🚀 批量处理已启动: {len(queue_item_ids)} 项")

    return ProcessQueueResponse(
        success=True,
        message=f"Processing {len(queue_item_ids)} items",
        queue_item_ids=queue_item_ids
    )


@app.post("/api/queue")
async def create_queue_item(
    request: CreateQueueItemRequest,
    current_user: dict = Depends(get_current_user)
):
    """添加图片到处理队列"""
    if not request.file_id and not request.source_url:
        raise HTTPException(status_code=400, detail="file_id or source_url required")

    project = crud.get_project(request.project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    item = crud.create_queue_item(
        organization_id=project.organization_id,
        project_id=project.id,
        file_name=request.file_name,
        file_id=request.file_id,
        source_url=request.source_url
    )
    logger.info(f"➕ 队列项已创建: {item.id} | {item.file_name}")
    return item


@app.get("/api/queue")
async def list_queue(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    limit: int = 100,
    current_user: dict = Depends(get_current_user)
):
    """获取队列列表与统计"""
    return {
        "items": crud.list_queue_items(status=status, project_id=project_id, limit=limit),
        "stats": crud.queue_stats(project_id)
    }


@app.post("/api/queue/reset-stuck")
async def reset_stuck(
    request: Optional[ResetStuckRequest] = None,
    current_user: dict = Depends(get_current_user)
):
    """重置卡在处理中的队列项"""
    minutes = request.older_than_minutes if request else 10
    count = crud.reset_stuck_items(minutes)
    logger.info(f"🔄 已重置 {count} 个卡住的队列项")
    return {"success": True, "reset": count}


@app.get("/api/queue/{queue_item_id}")
async def get_queue_item(queue_item_id: str, current_user: dict = Depends(get_current_user)):
    """获取队列项状态"""
    item = crud.get_queue_item(queue_item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return item


@app.post("/api/queue/{queue_item_id}/retry")
async def retry_queue_item(queue_item_id: str, current_user: dict = Depends(get_current_user)):
    """重试失败的队列项"""
    item = crud.get_queue_item(queue_item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Queue item not found")
    if not crud.retry_queue_item(queue_item_id):
        raise HTTPException(status_code=409, detail=f"Only failed items can be retried (current: {item.status})")
    return crud.get_queue_item(queue_item_id)


# ==================== 历史与项目 ====================

@app.get("/api/history/{project_id}")
async def get_history(
    project_id: str,
    limit: int = 50,
    offset: int = 0,
    current_user: dict = Depends(get_current_user)
):
    """获取项目处理历史"""
    records = crud.list_history(project_id, limit=limit, offset=offset)
    return {"project_id": project_id, "total": len(records), "history": records}


@app.post("/api/projects")
async def create_project(request: CreateProjectRequest, current_user: dict = Depends(get_current_user)):
    """创建项目"""
    organization_id = request.organization_id or current_user.get("organization_id") or current_user["sub"]
    project = crud.create_project(
        organization_id=organization_id,
        name=request.name,
        custom_prompt=request.custom_prompt,
        ai_model=request.ai_model,
        prompt_template=request.prompt_template,
        studio_preset=request.studio_preset
    )
    logger.info(f"📁 项目已创建: {project.id} | {project.name}")
    return project


# ==================== 启动 ====================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
