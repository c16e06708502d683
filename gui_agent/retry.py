"""重试与取消：错误分类、按阶段的重试策略、可取消的调用"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    CANCELLED = "cancelled"
    TRANSIENT = "transient"
    FATAL = "fatal"


class RunCancelled(Exception):
    """取消信号已触发，运行需要立即停止"""


class EmptyModelResponseError(Exception):
    """模型调用成功但没有返回任何文本"""


@dataclass
class RetryConfig:
    """单个阶段（screenshot / model / execute）的重试策略"""
    max_retries: int = 0
    wait_seconds: float = 0
    on_retry: Optional[Callable[[BaseException, int], Any]] = None


@dataclass
class RetryPolicies:
    screenshot: RetryConfig = field(default_factory=RetryConfig)
    model: RetryConfig = field(default_factory=RetryConfig)
    execute: RetryConfig = field(default_factory=RetryConfig)


def classify_error(error: BaseException, signal: Optional[asyncio.Event] = None) -> ErrorKind:
    """
    判断一个异常是否值得重试。

    取消信号一旦触发，任何失败都按取消处理；4xx 的请求错误（超时与限流除外）
    和空响应重试也没有意义。
    """
    if signal is not None and signal.is_set():
        return ErrorKind.CANCELLED
    if isinstance(error, (RunCancelled, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(error, EmptyModelResponseError):
        return ErrorKind.FATAL
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if 400 <= status < 500 and status not in (408, 409, 429):
            return ErrorKind.FATAL
    return ErrorKind.TRANSIENT


async def interruptible_sleep(seconds: float, signal: Optional[asyncio.Event] = None) -> None:
    """等待 seconds 秒，取消信号触发时提前返回"""
    if seconds <= 0:
        return
    if signal is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(signal.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryConfig] = None,
    signal: Optional[asyncio.Event] = None,
    name: str = "call",
) -> T:
    """
    按策略调用 fn，只重试 TRANSIENT 错误。

    取消信号会终止重试；重试耗尽后抛出最后一次的异常。
    """
    policy = policy or RetryConfig()

    stop = stop_after_attempt(policy.max_retries + 1)
    if signal is not None:
        stop = stop | stop_when_event_set(signal)

    def _should_retry(error: BaseException) -> bool:
        return classify_error(error, signal) is ErrorKind.TRANSIENT

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"⚠ {name} 第 {retry_state.attempt_number} 次失败，准备重试: {error}")
        if policy.on_retry and error is not None:
            policy.on_retry(error, retry_state.attempt_number)

    async def _sleep(seconds: float) -> None:
        await interruptible_sleep(seconds, signal)

    async for attempt in AsyncRetrying(
        stop=stop,
        wait=wait_fixed(policy.wait_seconds),
        sleep=_sleep,
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            if signal is not None and signal.is_set():
                raise RunCancelled(f"{name} aborted")
            return await fn()

    raise RuntimeError(f"{name} finished without result")


async def run_cancellable(awaitable: Awaitable[T], signal: Optional[asyncio.Event] = None) -> T:
    """等待 awaitable，取消信号先到时取消它并抛出 RunCancelled"""
    if signal is None:
        return await awaitable

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise RunCancelled("request was aborted")
