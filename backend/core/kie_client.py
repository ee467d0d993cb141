#!/usr/bin/env python3
"""
Kie.ai Flux Kontext 客户端
- 提交生成任务（POST /flux/kontext/generate）
- 查询任务状态（GET /flux/kontext/record-info）

传输层错误与非 JSON 响应不会抛出，统一包装为 ProviderReply 交给结果判定器。
"""

import os
import logging
from typing import Optional

import httpx
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator

from .outcome_resolver import ProviderReply

# 加载环境变量
load_dotenv()

logger = logging.getLogger("kie")

# ==================== API 配置 ====================
KIE_AI_BASE_URL = os.getenv("KIE_AI_BASE_URL", "https://api.kie.ai/api/v1")
KIE_POLL_INTERVAL_SECONDS = float(os.getenv("KIE_POLL_INTERVAL_SECONDS", "2.0"))
KIE_MAX_POLL_ATTEMPTS = int(os.getenv("KIE_MAX_POLL_ATTEMPTS", "30"))
KIE_REQUEST_TIMEOUT_SECONDS = float(os.getenv("KIE_REQUEST_TIMEOUT_SECONDS", "30"))

DEFAULT_MODEL = "flux-kontext-pro"
SUPPORTED_MODELS = ("flux-kontext-pro", "flux-kontext-max")
DEFAULT_ASPECT_RATIO = "1:1"
DEFAULT_OUTPUT_FORMAT = "png"


class KieConfig(BaseModel):
    """不可变的调用配置，测试时直接构造新实例覆盖时序参数"""
    model_config = ConfigDict(frozen=True)

    base_url: str = KIE_AI_BASE_URL
    generate_path: str = "/flux/kontext/generate"
    status_path: str = "/flux/kontext/record-info"
    model: str = DEFAULT_MODEL
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    output_format: str = DEFAULT_OUTPUT_FORMAT
    poll_interval: float = KIE_POLL_INTERVAL_SECONDS
    max_poll_attempts: int = KIE_MAX_POLL_ATTEMPTS
    request_timeout: float = KIE_REQUEST_TIMEOUT_SECONDS
    total_timeout: Optional[float] = None

    @property
    def wall_clock_budget(self) -> float:
        """整体时间预算：轮询预算 + 单次请求超时 + 1 秒"""
        if self.total_timeout is not None:
            return self.total_timeout
        return self.poll_interval * self.max_poll_attempts + self.request_timeout + 1.0

    @property
    def generate_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.generate_path}"

    @property
    def status_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.status_path}"


class GenerationRequest(BaseModel):
    """单次生成请求"""
    model_config = ConfigDict(frozen=True)

    image: str
    prompt: str
    model: str = DEFAULT_MODEL
    aspect_ratio: str = DEFAULT_ASPECT_RATIO
    output_format: str = DEFAULT_OUTPUT_FORMAT

    @field_validator("image")
    @classmethod
    def _check_image(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("image must be a non-empty URL or data URI")
        if not (value.startswith("http://") or value.startswith("https://") or value.startswith("data:image/")):
            raise ValueError("image must be an http(s) URL or a base64 data URI")
        return value

    @field_validator("prompt")
    @classmethod
    def _check_prompt(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("prompt must not be empty")
        return value

    @field_validator("model")
    @classmethod
    def _check_model(cls, value: str) -> str:
        if value not in SUPPORTED_MODELS:
            raise ValueError(f"unsupported model: {value}")
        return value

    def to_payload(self) -> dict:
        return {
            "prompt": self.prompt,
            "image": self.image,
            "model": self.model,
            "aspect_ratio": self.aspect_ratio,
            "output_format": self.output_format,
        }


class KieClient:
    """Kie.ai HTTP 客户端（async with 管理连接）"""

    def __init__(
        self,
        api_key: str,
        config: Optional[KieConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key
        self.config = config or KieConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "KieClient":
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json"
            },
            timeout=self.config.request_timeout,
            transport=self._transport
        )
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("KieClient must be used inside 'async with'")
        return self._client

    async def _send(self, method: str, url: str, **kwargs) -> ProviderReply:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"Kie.ai 网络错误 {method} {url}: {type(e).__name__}: {e}")
            return ProviderReply(network_error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__)

        try:
            body = response.json()
        except ValueError:
            body = None
            logger.warning(f"Kie.ai 响应不是 JSON ({response.status_code}): {response.text[:200]}")

        return ProviderReply(status_code=response.status_code, body=body)

    async def submit(self, request: GenerationRequest) -> ProviderReply:
        """提交生成任务（仅一次请求，不重试）"""
        logger.info(f"提交 Kie.ai 任务: model={request.model}, aspect_ratio={request.aspect_ratio}")
        reply = await self._send("POST", self.config.generate_url, json=request.to_payload())
        logger.info(f"Kie.ai 提交响应: status={reply.status_code}, network_error={reply.network_error}")
        return reply

    async def fetch_status(self, task_id: str) -> ProviderReply:
        """查询任务状态"""
        return await self._send("GET", self.config.status_url, params={"taskId": task_id})
