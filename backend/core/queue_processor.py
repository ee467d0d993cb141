#!/usr/bin/env python3
"""
队列处理器
认领 -> 下载源图 -> 保存原图 -> AI优化 -> 保存结果 -> 写历史

进度检查点：10 -> 30 -> 50 -> 80（优化器上报）-> 100
"""

import os
import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .image_fetcher import ImageFetcher, ImageFetchError
from .image_optimizer import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PASSTHROUGH,
    ImageOptimizer,
)
from .kie_client import DEFAULT_MODEL, SUPPORTED_MODELS
from .outcome_resolver import Success
from .prompt_builder import resolve_project_prompt
from ..db import crud
from ..db.progress import SqliteProgressReporter
from ..utils.logger import StageLogger, TaskLogger
from ..utils.storage import StorageManager

logger = logging.getLogger("queue")

QUEUE_CONCURRENCY = int(os.getenv("QUEUE_CONCURRENCY", "5"))

RAW_EXTENSIONS = ('cr2', 'cr3', 'nef', 'arw', 'dng', 'raw', 'orf', 'rw2', 'pef', 'srw')

# 队列处理固定开启全部增强项
QUEUE_SETTINGS = {
    "enhance_quality": True,
    "remove_background": True,
    "enhance_lighting": True,
    "enhance_colors": True,
}

PASSTHROUGH_ERROR_MESSAGE = "Processed in passthrough mode - original returned"
CANCELLED_ERROR_MESSAGE = "Processing cancelled"
INTERNAL_ERROR_MESSAGE = "Internal error while processing image"


class QueueProcessingError(Exception):
    """队列项处理失败（队列项会被标记为 failed）"""


class QueueItemNotFound(Exception):
    def __init__(self, queue_item_id: str):
        super().__init__(f"Queue item not found: {queue_item_id}")
        self.queue_item_id = queue_item_id


class QueueItemBusy(Exception):
    """队列项已在处理或已完成"""

    def __init__(self, queue_item_id: str, status: str):
        super().__init__(f"Queue item {queue_item_id} is {status}")
        self.queue_item_id = queue_item_id
        self.status = status


def _now() -> str:
    return datetime.now().isoformat()


def file_extension(file_name: Optional[str]) -> str:
    name = (file_name or "").lower()
    return name.rsplit(".", 1)[1] if "." in name else ""


class QueueProcessor:
    """队列项处理器"""

    def __init__(
        self,
        optimizer: ImageOptimizer,
        storage: StorageManager,
        fetcher: Optional[ImageFetcher] = None,
        logs_dir: Path = Path("logs") / "queue",
        reporter_factory=SqliteProgressReporter
    ):
        self.optimizer = optimizer
        self.storage = storage
        self.fetcher = fetcher or optimizer.fetcher
        self.logs_dir = Path(logs_dir)
        self.reporter_factory = reporter_factory

    async def process(self, queue_item_id: str, cancel_event: Optional[asyncio.Event] = None) -> dict:
        """
        处理单个队列项

        Returns:
            处理结果字典（success 为 False 时队列项已标记 failed）

        Raises:
            QueueItemNotFound: 队列项不存在
            QueueItemBusy: 队列项正在处理或已完成
        """
        item = crud.get_queue_item(queue_item_id)
        if item is None:
            raise QueueItemNotFound(queue_item_id)

        # RAW 文件直接拒绝
        ext = file_extension(item.file_name)
        if ext in RAW_EXTENSIONS:
            message = f"RAW files ({ext.upper()}) are not supported. Please convert to JPG/PNG first."
            logger.error(f"[Queue:{queue_item_id}] {message}")
            crud.update_queue_item(queue_item_id, status=STATUS_FAILED, error_message=message, completed_at=_now())
            return {
                "success": False,
                "queue_item_id": queue_item_id,
                "status": STATUS_FAILED,
                "error": "RAW files not supported",
                "message": message,
            }

        if not crud.claim_queue_item(queue_item_id):
            raise QueueItemBusy(queue_item_id, item.status)

        reporter = self.reporter_factory(queue_item_id)
        task_logger = TaskLogger(queue_item_id, self.logs_dir, title=item.file_name)
        stages = StageLogger(task_logger)
        started = datetime.now()

        try:
            await reporter.update(10)
            project = crud.get_project(item.project_id)

            # ========== 阶段1: 下载源图 ==========
            stages.start_stage("下载源图")
            data, content_type = await self._download_source(item)
            task_logger.log(f"源图大小: {len(data)} bytes ({content_type})")
            stages.end_stage()
            await reporter.update(30)

            # ========== 阶段2: 保存原图 ==========
            stages.start_stage("保存原图")
            original_url = self._save(
                lambda: self.storage.save_original(
                    item.organization_id, item.project_id, data,
                    file_name=item.file_name, content_type=content_type
                )
            )
            task_logger.log(f"原图地址: {original_url}")
            stages.end_stage()
            await reporter.update(50, original_url=original_url)

            # ========== 阶段3: AI优化 ==========
            prompt = resolve_project_prompt(project)
            model = project.ai_model if project and project.ai_model in SUPPORTED_MODELS else DEFAULT_MODEL
            crud.update_queue_item(queue_item_id, status="optimizing", generated_prompt=prompt, ai_model=model)
            task_logger.log_dict({"prompt": prompt, "ai_model": model}, "优化参数")

            stages.start_stage("AI优化")
            result = await self.optimizer.optimize_outcome(
                image_url=original_url,
                prompt=prompt,
                settings=QUEUE_SETTINGS,
                ai_model=model,
                reporter=reporter,
                cancel_event=cancel_event,
            )
            task_logger.log_dict(result.response, "优化结果")
            stages.end_stage(success=isinstance(result.outcome, Success))

            status = result.status
            result_url = original_url
            size_after = None

            # ========== 阶段4: 保存优化结果 ==========
            if isinstance(result.outcome, Success):
                stages.start_stage("保存优化结果")
                try:
                    optimized, _ = await self.fetcher.download(result.outcome.result_url)
                    result_url = self._save(
                        lambda: self.storage.save_optimized(item.organization_id, item.project_id, optimized)
                    )
                    size_after = len(optimized)
                    stages.end_stage()
                except (ImageFetchError, QueueProcessingError) as e:
                    # 优化结果拿不到时退回原图
                    task_logger.log(f"优化结果下载失败，退回原图: {e}", "WARNING")
                    stages.end_stage(success=False)
                    status = STATUS_PASSTHROUGH

            error_message = None
            if status == STATUS_PASSTHROUGH:
                error_message = PASSTHROUGH_ERROR_MESSAGE
            elif status == STATUS_FAILED:
                error_message = result.response.get("error")

            # ========== 阶段5: 写历史 ==========
            processing_time = int(round((datetime.now() - started).total_seconds()))
            crud.create_history_record(
                organization_id=item.organization_id,
                project_id=item.project_id,
                status=status,
                queue_item_id=queue_item_id,
                file_id=item.file_id,
                file_name=item.file_name,
                original_url=original_url,
                optimized_url=result_url,
                file_size_before=len(data),
                file_size_after=size_after if size_after is not None else len(data),
                processing_time_sec=processing_time,
                generated_prompt=prompt,
                ai_model=model,
                task_id=result.task_id,
                tokens_used=1 if status == STATUS_COMPLETED else 0,
            )

            await reporter.update(
                100,
                status=status,
                result_url=result_url,
                error_message=error_message,
                completed_at=_now(),
            )
            task_logger.log(f"处理完成: {status}, 耗时 {processing_time}s")

            return {
                "success": status != STATUS_FAILED,
                "queue_item_id": queue_item_id,
                "status": status,
                "optimized": status == STATUS_COMPLETED,
                "original_url": original_url,
                "result_url": result_url,
                "task_id": result.task_id,
                "message": result.response.get("message"),
                "error": error_message,
            }

        except QueueProcessingError as e:
            stages.end_stage(success=False)
            task_logger.log(f"处理失败: {e}", "ERROR")
            return self._mark_failed(queue_item_id, str(e))
        except Exception as e:
            # 认领后的任何异常都必须落到 failed，不能卡在 processing
            stages.end_stage(success=False)
            task_logger.log(f"处理异常: {type(e).__name__}: {e}", "ERROR")
            logger.exception(f"[Queue:{queue_item_id}] 处理异常: {e}")
            return self._mark_failed(queue_item_id, f"{INTERNAL_ERROR_MESSAGE}: {e}")
        except asyncio.CancelledError:
            task_logger.log("处理被取消", "WARNING")
            crud.update_queue_item(
                queue_item_id, status=STATUS_FAILED, error_message=CANCELLED_ERROR_MESSAGE, completed_at=_now()
            )
            raise
        finally:
            task_logger.close()

    async def _download_source(self, item) -> Tuple[bytes, str]:
        try:
            if item.source_url:
                return await self.fetcher.download(item.source_url)
            if item.file_id:
                return await self.fetcher.download_drive_file(item.file_id)
        except ImageFetchError as e:
            raise QueueProcessingError(str(e))
        except Exception as e:
            logger.error(f"源图下载异常 {item.id}: {type(e).__name__}: {e}")
            raise QueueProcessingError(f"Failed to download source image: {e}")
        raise QueueProcessingError("Queue item has no file_id or source_url")

    def _mark_failed(self, queue_item_id: str, message: str) -> dict:
        try:
            crud.update_queue_item(queue_item_id, status=STATUS_FAILED, error_message=message, completed_at=_now())
        except Exception as e:
            logger.exception(f"[Queue:{queue_item_id}] 标记失败状态时出错: {e}")
        return {
            "success": False,
            "queue_item_id": queue_item_id,
            "status": STATUS_FAILED,
            "error": message,
        }

    def _save(self, write) -> str:
        try:
            return self.storage.public_url(write())
        except OSError as e:
            logger.error(f"存储写入失败: {e}")
            raise QueueProcessingError("Failed to upload image to storage")

    async def process_batch(self, queue_item_ids: Iterable[str], concurrency: int = QUEUE_CONCURRENCY) -> List[dict]:
        """并发处理多个队列项，每个队列项独立优化"""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def process_with_semaphore(queue_item_id: str) -> dict:
            async with semaphore:
                try:
                    return await self.process(queue_item_id)
                except (QueueItemNotFound, QueueItemBusy) as e:
                    logger.warning(f"跳过队列项 {queue_item_id}: {e}")
                    return {"success": False, "queue_item_id": queue_item_id, "error": str(e)}
                except Exception as e:
                    logger.exception(f"队列项 {queue_item_id} 处理异常: {e}")
                    return {"success": False, "queue_item_id": queue_item_id, "error": str(e)}

        results = await asyncio.gather(*(process_with_semaphore(i) for i in queue_item_ids))
        success_count = sum(1 for r in results if r.get("success"))
        logger.info(f"批量处理完成: {success_count}/{len(results)} 成功")
        return list(results)
