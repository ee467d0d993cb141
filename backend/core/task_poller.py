#!/usr/bin/env python3
"""
任务轮询器
显式状态机：Submitted -> Polling(n) -> Succeeded / Failed / TimedOut / Aborted

next_state 为纯函数（不做 I/O、不睡眠），TaskPoller.run 负责睡眠与请求。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from .kie_client import KieClient, KieConfig
from .outcome_resolver import (
    CAUSE_CANCELLED,
    CAUSE_POLL_TIMEOUT,
    Outcome,
    Passthrough,
    StatusPending,
    Success,
    resolve_status_reply,
)

logger = logging.getLogger("kie")

TIMEOUT_ERROR = "Timeout waiting for image optimization"

Sleep = Callable[[float], Awaitable[None]]


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)


class Submitted(_State):
    kind: Literal["submitted"] = "submitted"
    task_id: str


class Polling(_State):
    kind: Literal["polling"] = "polling"
    task_id: str
    attempt: int  # 已完成的查询次数


class Succeeded(_State):
    kind: Literal["succeeded"] = "succeeded"
    task_id: str
    result_url: str
    attempts: int


class Failed(_State):
    """状态查询得到终态降级（显式失败或 HTTP 层错误）"""
    kind: Literal["failed"] = "failed"
    task_id: str
    outcome: Passthrough
    attempts: int


class TimedOut(_State):
    kind: Literal["timed_out"] = "timed_out"
    task_id: str
    attempts: int


class Aborted(_State):
    kind: Literal["aborted"] = "aborted"
    task_id: str
    cause: str
    attempts: int


PollState = Union[Submitted, Polling, Succeeded, Failed, TimedOut, Aborted]
TERMINAL_STATES = (Succeeded, Failed, TimedOut, Aborted)


def is_terminal(state: PollState) -> bool:
    return isinstance(state, TERMINAL_STATES)


def attempts_of(state: PollState) -> int:
    if isinstance(state, Submitted):
        return 0
    if isinstance(state, Polling):
        return state.attempt
    return state.attempts


def next_state(
    state: PollState,
    result: Union[Outcome, StatusPending],
    max_attempts: int
) -> PollState:
    """
    根据一次状态查询的判定结果推进状态

    Args:
        state: 当前状态（Submitted 或 Polling）
        result: resolve_status_reply 的返回值
        max_attempts: 查询次数上限

    Returns:
        新状态；终态不再变化
    """
    if is_terminal(state):
        return state

    attempt = attempts_of(state) + 1
    if isinstance(result, Success):
        return Succeeded(task_id=state.task_id, result_url=result.result_url, attempts=attempt)
    if isinstance(result, Passthrough):
        return Failed(task_id=state.task_id, outcome=result, attempts=attempt)
    if attempt >= max_attempts:
        return TimedOut(task_id=state.task_id, attempts=attempt)
    return Polling(task_id=state.task_id, attempt=attempt)


def abort(state: PollState, cause: str = CAUSE_CANCELLED) -> PollState:
    if is_terminal(state):
        return state
    return Aborted(task_id=state.task_id, cause=cause, attempts=attempts_of(state))


def outcome_for(state: PollState) -> Outcome:
    """终态 -> 结果"""
    if isinstance(state, Succeeded):
        return Success(result_url=state.result_url, task_id=state.task_id)
    if isinstance(state, Failed):
        return state.outcome
    if isinstance(state, TimedOut):
        return Passthrough(cause=CAUSE_POLL_TIMEOUT, task_id=state.task_id, error=TIMEOUT_ERROR)
    if isinstance(state, Aborted):
        return Passthrough(cause=state.cause, task_id=state.task_id)
    raise ValueError(f"state is not terminal: {state.kind}")


class TaskPoller:
    """按固定间隔顺序查询任务状态，最多 max_poll_attempts 次"""

    def __init__(self, client: KieClient, config: Optional[KieConfig] = None, sleep: Optional[Sleep] = None):
        self.client = client
        self.config = config or client.config
        self.sleep = sleep or asyncio.sleep

    async def run(self, task_id: str, cancel_event: Optional[asyncio.Event] = None) -> Outcome:
        state: PollState = Submitted(task_id=task_id)
        logger.info(f"开始轮询任务 {task_id} (间隔 {self.config.poll_interval}s, 上限 {self.config.max_poll_attempts} 次)")

        while not is_terminal(state):
            if cancel_event is not None and cancel_event.is_set():
                state = abort(state)
                break

            await self.sleep(self.config.poll_interval)

            if cancel_event is not None and cancel_event.is_set():
                state = abort(state)
                break

            reply = await self.client.fetch_status(task_id)
            state = next_state(state, resolve_status_reply(reply, task_id=task_id), self.config.max_poll_attempts)
            logger.debug(f"任务 {task_id} 第 {attempts_of(state)} 次查询 -> {state.kind}")

        logger.info(f"任务 {task_id} 轮询结束: {state.kind} (共 {attempts_of(state)} 次)")
        return outcome_for(state)
