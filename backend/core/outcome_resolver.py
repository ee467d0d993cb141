#!/usr/bin/env python3
"""
结果判定器
将 Kie.ai 的提交响应与状态响应统一归类为 Success / Failure / Passthrough

所有函数均为纯函数：同一输入总是得到相同结果。
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

# ==================== 降级原因 ====================
CAUSE_NETWORK_ERROR = "network error"
CAUSE_UNAUTHORIZED = "unauthorized"
CAUSE_RATE_LIMITED = "rate limited"
CAUSE_PROVIDER_UNAVAILABLE = "provider unavailable"
CAUSE_PROVIDER_REJECTED = "provider rejected request"
CAUSE_UNRECOGNIZED = "unrecognized response"
CAUSE_POLL_TIMEOUT = "poll timeout"
CAUSE_CANCELLED = "cancelled"
CAUSE_INTERNAL_ERROR = "internal error"
CAUSE_PROVIDER_FAILED = "provider failed"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class ProviderReply(_Frozen):
    """一次 HTTP 交互的结果（传输错误不抛异常，记录在 network_error）"""
    status_code: Optional[int] = None
    body: Optional[Any] = None
    network_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.network_error is None and self.status_code is not None and 200 <= self.status_code < 300


# ==================== 终态结果 ====================

class Success(_Frozen):
    kind: Literal["success"] = "success"
    result_url: str
    task_id: Optional[str] = None
    provider_metadata: Optional[dict] = None


class Failure(_Frozen):
    """配置类失败（未发起任何请求）"""
    kind: Literal["failure"] = "failure"
    reason: str
    provider_status: Optional[int] = None


class Passthrough(_Frozen):
    """降级：原图返回"""
    kind: Literal["passthrough"] = "passthrough"
    cause: str
    original_url: Optional[str] = None
    task_id: Optional[str] = None
    error: Optional[str] = None
    provider_status: Optional[int] = None


Outcome = Union[Success, Failure, Passthrough]


# ==================== 提交响应解析 ====================

class TaskAccepted(_Frozen):
    kind: Literal["task"] = "task"
    task_id: str


class ImmediateResult(_Frozen):
    kind: Literal["image"] = "image"
    image_url: str


class Unrecognized(_Frozen):
    kind: Literal["unrecognized"] = "unrecognized"


GenerateShape = Union[TaskAccepted, ImmediateResult, Unrecognized]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _first_item(value: Any) -> Optional[str]:
    if isinstance(value, list) and value:
        return _non_empty_str(value[0])
    return None


def _parse_task_id(body: dict) -> Optional[GenerateShape]:
    data = _as_dict(body.get("data"))
    for candidate in (data.get("taskId"), data.get("id"), body.get("id")):
        task_id = _non_empty_str(candidate)
        if task_id:
            return TaskAccepted(task_id=task_id)
    return None


def _parse_image_url(body: dict) -> Optional[GenerateShape]:
    data = _as_dict(body.get("data"))
    for candidate in (data.get("images"), body.get("output")):
        url = _first_item(candidate)
        if url:
            return ImmediateResult(image_url=url)
    return None


# 按优先级排列：任务ID > 直接图片
GENERATE_PARSERS = (_parse_task_id, _parse_image_url)


def parse_generate_body(body: Any) -> GenerateShape:
    """依次尝试解析器，返回第一个匹配的结果"""
    if not isinstance(body, dict):
        return Unrecognized()
    for parser in GENERATE_PARSERS:
        shape = parser(body)
        if shape is not None:
            return shape
    return Unrecognized()


# ==================== HTTP 层分类 ====================

def effective_status(reply: ProviderReply) -> Optional[int]:
    """
    Kie.ai 有时以 HTTP 200 返回 {"code": 4xx/5xx, "msg": ...}，
    此时以 body.code 作为实际状态码
    """
    body = _as_dict(reply.body)
    code = body.get("code")
    if reply.ok and isinstance(code, int) and not isinstance(code, bool) and code >= 400:
        return code
    return reply.status_code


def classify_http(reply: ProviderReply, task_id: Optional[str] = None) -> Optional[Passthrough]:
    """
    网络/HTTP 层判定

    Returns:
        Passthrough 表示该响应已可判定为降级，None 表示 2xx 需继续解析 body
    """
    if reply.network_error is not None or reply.status_code is None:
        return Passthrough(cause=CAUSE_NETWORK_ERROR, task_id=task_id, error=reply.network_error)

    status = effective_status(reply)
    message = _provider_message(reply.body)
    if status in (401, 403):
        return Passthrough(cause=CAUSE_UNAUTHORIZED, task_id=task_id, error=message, provider_status=status)
    if status == 429:
        return Passthrough(cause=CAUSE_RATE_LIMITED, task_id=task_id, error=message, provider_status=status)
    if status >= 500:
        return Passthrough(cause=CAUSE_PROVIDER_UNAVAILABLE, task_id=task_id, error=message, provider_status=status)
    if status >= 300:
        return Passthrough(cause=CAUSE_PROVIDER_REJECTED, task_id=task_id, error=message, provider_status=status)
    return None


def _provider_message(body: Any) -> Optional[str]:
    body = _as_dict(body)
    for key in ("msg", "message", "error"):
        text = _non_empty_str(body.get(key))
        if text:
            return text
    return None


def resolve_submit_reply(reply: ProviderReply) -> Union[Outcome, TaskAccepted]:
    """
    判定提交响应

    Returns:
        TaskAccepted 表示进入轮询，否则为终态结果
    """
    passthrough = classify_http(reply)
    if passthrough is not None:
        return passthrough

    shape = parse_generate_body(reply.body)
    if isinstance(shape, TaskAccepted):
        return shape
    if isinstance(shape, ImmediateResult):
        return Success(result_url=shape.image_url, provider_metadata=_as_dict(reply.body) or None)
    return Passthrough(cause=CAUSE_UNRECOGNIZED, error=_provider_message(reply.body))


# ==================== 状态响应解析 ====================

class StatusSucceeded(_Frozen):
    kind: Literal["succeeded"] = "succeeded"
    result_url: str


class StatusFailed(_Frozen):
    kind: Literal["failed"] = "failed"
    reason: str


class StatusPending(_Frozen):
    kind: Literal["pending"] = "pending"


StatusReading = Union[StatusSucceeded, StatusFailed, StatusPending]


def _unwrap_record(body: Any) -> dict:
    """{"code": 200, "data": {...successFlag...}} 形式需要先拆包"""
    body = _as_dict(body)
    data = body.get("data")
    if "successFlag" not in body and isinstance(data, dict):
        return data
    return body


def read_status_body(body: Any) -> StatusReading:
    """解析状态响应 body，未知形态一律视为处理中"""
    record = _unwrap_record(body)
    flag = record.get("successFlag")
    response = _as_dict(record.get("response"))

    if flag == 1:
        url = _non_empty_str(response.get("resultImageUrl"))
        if url:
            return StatusSucceeded(result_url=url)
    if flag == 0 and response.get("status") == "failed":
        reason = _non_empty_str(response.get("error")) or CAUSE_PROVIDER_FAILED
        return StatusFailed(reason=reason)
    return StatusPending()


def resolve_status_reply(reply: ProviderReply, task_id: Optional[str] = None) -> Union[Outcome, StatusPending]:
    """
    判定状态响应

    Returns:
        StatusPending 表示需要继续轮询，否则为终态结果
    """
    passthrough = classify_http(reply, task_id=task_id)
    if passthrough is not None:
        return passthrough

    reading = read_status_body(reply.body)
    if isinstance(reading, StatusSucceeded):
        return Success(result_url=reading.result_url, task_id=task_id)
    if isinstance(reading, StatusFailed):
        # 显式失败同样降级，保证用户拿到图片
        return Passthrough(cause=reading.reason, task_id=task_id, error=reading.reason)
    return reading


def with_original(outcome: Outcome, original_url: Optional[str]) -> Outcome:
    """为降级结果补上原图地址"""
    if isinstance(outcome, Passthrough) and outcome.original_url is None:
        return outcome.model_copy(update={"original_url": original_url})
    return outcome
