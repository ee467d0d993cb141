#!/usr/bin/env python3
"""
图片优化流水线
前置检查 -> Drive 文件解析 -> 构建提示词 -> 提交任务 -> 轮询 -> 判定 -> 降级映射

除请求参数错误（OptimizeRequestError）外，任何网络/解析异常都不会抛出本模块，
调用方总能拿到 success 或 passthrough 形式的结果。
"""

import os
import asyncio
import logging
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .kie_client import SUPPORTED_MODELS, GenerationRequest, KieClient, KieConfig
from .task_poller import TIMEOUT_ERROR, Sleep, TaskPoller
from .image_fetcher import DRIVE_DOWNLOAD_ERROR, ImageFetcher, ImageFetchError
from .prompt_builder import build_prompt
from .outcome_resolver import (
    CAUSE_CANCELLED,
    CAUSE_INTERNAL_ERROR,
    CAUSE_NETWORK_ERROR,
    CAUSE_POLL_TIMEOUT,
    CAUSE_PROVIDER_REJECTED,
    CAUSE_PROVIDER_UNAVAILABLE,
    CAUSE_RATE_LIMITED,
    CAUSE_UNAUTHORIZED,
    CAUSE_UNRECOGNIZED,
    Failure,
    Outcome,
    Passthrough,
    Success,
    TaskAccepted,
    resolve_submit_reply,
    with_original,
)
from ..utils.logger import get_alert_logger

logger = logging.getLogger("kie")

MISSING_KEY_ERROR = "KIE_AI_API_KEY not configured"
MISSING_KEY_MESSAGE = "Image returned without optimization - API key not set"
IMAGE_REQUIRED_ERROR = "image_url or file_id required"

PASSTHROUGH_MESSAGES = {
    CAUSE_NETWORK_ERROR: "Image returned without optimization - network error contacting Kie.ai",
    CAUSE_UNAUTHORIZED: "Image returned without optimization - Kie.ai rejected the API key",
    CAUSE_RATE_LIMITED: "Image returned without optimization - Kie.ai rate limit reached",
    CAUSE_PROVIDER_UNAVAILABLE: "Image returned without optimization - Kie.ai service unavailable",
    CAUSE_PROVIDER_REJECTED: "Image returned without optimization - Kie.ai rejected the request",
    CAUSE_UNRECOGNIZED: "No optimized image returned from Kie.ai",
    CAUSE_POLL_TIMEOUT: "Image returned without optimization - timed out waiting for Kie.ai",
    CAUSE_CANCELLED: "Image returned without optimization - optimization cancelled",
    CAUSE_INTERNAL_ERROR: "Image returned without optimization - internal error",
}
# 其余原因为 Kie.ai 返回的失败信息
PROVIDER_FAILED_MESSAGE = "Image returned without optimization - Kie.ai task failed"

# 队列项终态
STATUS_COMPLETED = "completed"
STATUS_PASSTHROUGH = "completed_passthrough"
STATUS_FAILED = "failed"


class OptimizeRequestError(Exception):
    """请求参数错误（没有可降级的图片），在 HTTP 层映射为 4xx/5xx"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class OptimizationResult(BaseModel):
    """一次优化调用的完整结果"""
    model_config = ConfigDict(frozen=True)

    outcome: Any
    original_url: Optional[str] = None
    response: dict
    prompt: Optional[str] = None
    ai_model: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def status(self) -> str:
        return terminal_status(self.outcome)


# ==================== 结果映射（纯函数） ====================

def terminal_status(outcome: Outcome) -> str:
    if isinstance(outcome, Success):
        return STATUS_COMPLETED
    if isinstance(outcome, Passthrough):
        return STATUS_PASSTHROUGH
    return STATUS_FAILED


def passthrough_message(cause: str) -> str:
    return PASSTHROUGH_MESSAGES.get(cause, PROVIDER_FAILED_MESSAGE)


def to_passthrough_response(outcome: Outcome, original_url: Optional[str]) -> dict:
    """非成功结果 -> {passthrough, original_url, message, [task_id], [error]}"""
    if isinstance(outcome, Failure):
        response = {
            "error": outcome.reason,
            "passthrough": True,
            "message": MISSING_KEY_MESSAGE,
        }
        if original_url:
            response["original_url"] = original_url
        return response

    response = {
        "passthrough": True,
        "original_url": original_url,
        "message": passthrough_message(outcome.cause),
    }
    if outcome.task_id:
        response["task_id"] = outcome.task_id
    if outcome.error:
        response["error"] = outcome.error
    return response


def to_response(outcome: Outcome, original_url: Optional[str]) -> dict:
    if isinstance(outcome, Success):
        return {"success": True, "optimized_url": outcome.result_url}
    return to_passthrough_response(outcome, original_url)


# ==================== 优化器 ====================

class ImageOptimizer:
    """Kie.ai 图片优化器"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[KieConfig] = None,
        fetcher: Optional[ImageFetcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Sleep] = None
    ):
        self.api_key = api_key if api_key is not None else os.getenv("KIE_AI_API_KEY", "")
        self.config = config or KieConfig()
        self.fetcher = fetcher or ImageFetcher()
        self.transport = transport
        self.sleep = sleep
        self.alerts = get_alert_logger()

    async def optimize(
        self,
        image_url: Optional[str] = None,
        file_id: Optional[str] = None,
        prompt: Optional[str] = None,
        settings: Optional[Mapping[str, bool]] = None,
        ai_model: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        reporter=None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> dict:
        """
        优化单张图片

        Returns:
            {"success": True, "optimized_url": ...} 或 passthrough 结构

        Raises:
            OptimizeRequestError: 缺少图片、模型不支持、Drive 文件无法获取
        """
        result = await self.optimize_outcome(
            image_url=image_url,
            file_id=file_id,
            prompt=prompt,
            settings=settings,
            ai_model=ai_model,
            aspect_ratio=aspect_ratio,
            reporter=reporter,
            cancel_event=cancel_event,
        )
        return result.response

    async def optimize_outcome(
        self,
        image_url: Optional[str] = None,
        file_id: Optional[str] = None,
        prompt: Optional[str] = None,
        settings: Optional[Mapping[str, bool]] = None,
        ai_model: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        reporter=None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> OptimizationResult:
        # 1. API Key（在任何网络请求之前）
        if not self.api_key:
            self.alerts.warning(f"{MISSING_KEY_ERROR}，图片将原样返回")
            outcome = Failure(reason=MISSING_KEY_ERROR)
            await self._report(reporter, None)
            return OptimizationResult(
                outcome=outcome,
                original_url=image_url,
                response=to_response(outcome, image_url),
            )

        # 2. 参数检查
        if not image_url and not file_id:
            raise OptimizeRequestError(IMAGE_REQUIRED_ERROR, 400)

        model = ai_model or self.config.model
        if model not in SUPPORTED_MODELS:
            raise OptimizeRequestError(f"Unsupported ai_model: {model}", 400)

        # 3. Drive 文件转为 data URI
        source = image_url
        if not source:
            try:
                source = await self.fetcher.resolve_drive_data_uri(file_id)
            except ImageFetchError as e:
                logger.error(f"Drive 文件 {file_id} 下载失败: {e}")
                raise OptimizeRequestError(DRIVE_DOWNLOAD_ERROR, 502)

        # 4. 提示词
        final_prompt = build_prompt(prompt, settings)
        try:
            request = GenerationRequest(
                image=source,
                prompt=final_prompt,
                model=model,
                aspect_ratio=aspect_ratio or self.config.aspect_ratio,
                output_format=self.config.output_format,
            )
        except ValidationError as e:
            raise OptimizeRequestError(f"Invalid optimization request: {e.errors()[0]['msg']}", 400)

        logger.info(f"开始优化: model={model}, prompt={final_prompt[:80]}")

        # 5. 提交 + 轮询（整体时间预算）
        outcome = await self.run(request, cancel_event)
        outcome = with_original(outcome, source)

        if isinstance(outcome, Passthrough) and outcome.cause == CAUSE_UNAUTHORIZED:
            self.alerts.warning(f"Kie.ai 拒绝了 API Key (HTTP {outcome.provider_status})，请检查 KIE_AI_API_KEY")

        task_id = outcome.task_id if not isinstance(outcome, Failure) else None
        logger.info(f"优化结束: {terminal_status(outcome)} ({getattr(outcome, 'cause', 'ok')})")
        await self._report(reporter, task_id)

        return OptimizationResult(
            outcome=outcome,
            original_url=source,
            response=to_response(outcome, source),
            prompt=final_prompt,
            ai_model=model,
            task_id=task_id,
        )

    async def run(self, request: GenerationRequest, cancel_event: Optional[asyncio.Event] = None) -> Outcome:
        """在整体时间预算内执行提交与轮询，始终返回终态结果"""
        seen: dict = {}
        try:
            return await asyncio.wait_for(
                self._execute(request, cancel_event, seen),
                timeout=self.config.wall_clock_budget
            )
        except asyncio.TimeoutError:
            logger.warning(f"优化超出时间预算 {self.config.wall_clock_budget}s (task_id={seen.get('task_id')})")
            return Passthrough(cause=CAUSE_POLL_TIMEOUT, task_id=seen.get("task_id"), error=TIMEOUT_ERROR)
        except Exception as e:
            logger.exception(f"优化流程异常: {e}")
            return Passthrough(cause=CAUSE_INTERNAL_ERROR, task_id=seen.get("task_id"), error=str(e))

    async def _execute(self, request: GenerationRequest, cancel_event: Optional[asyncio.Event], seen: dict) -> Outcome:
        if cancel_event is not None and cancel_event.is_set():
            return Passthrough(cause=CAUSE_CANCELLED)

        async with KieClient(self.api_key, self.config, transport=self.transport) as client:
            submitted = resolve_submit_reply(await client.submit(request))
            if not isinstance(submitted, TaskAccepted):
                return submitted

            seen["task_id"] = submitted.task_id
            logger.info(f"Kie.ai 任务已创建: {submitted.task_id}")
            poller = TaskPoller(client, self.config, sleep=self.sleep)
            return await poller.run(submitted.task_id, cancel_event)

    async def _report(self, reporter, task_id: Optional[str]):
        """80% 检查点；上报失败不影响优化结果"""
        if reporter is None:
            return
        fields = {"task_id": task_id} if task_id else {}
        try:
            await reporter.update(80, **fields)
        except Exception as e:
            logger.warning(f"进度上报失败: {e}")
