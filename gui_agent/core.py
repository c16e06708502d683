"""GUI 自动化智能体核心类：截图 → 模型 → 解析 → 执行 的控制循环"""

import asyncio
import functools
import inspect
import logging
import time
import traceback
from typing import Any, Callable, Optional, Union

import openai

from .config import ModelConfig
from .constants import (
    IMAGE_PLACEHOLDER,
    MAX_LOOP_COUNT,
    MAX_SNAPSHOT_ERR_CNT,
    SNAPSHOT_RETRY_INTERVAL,
    SYSTEM_PROMPT,
    SYSTEM_PROMPT_TEMPLATE,
    TERMINAL_ACTIONS,
    InternalActionSpaces,
)
from .memory import get_summary, process_vlm_params, to_vlm_model_format
from .models import (
    AgentError,
    ErrorStatusEnum,
    ExecuteParams,
    InvokeParams,
    ParsedAction,
    RunState,
    ScreenshotContext,
    StatusEnum,
    Timing,
    Turn,
    UITarsModelVersion,
    coerce_status,
)
from .operator import Operator, action_spaces_of
from .perception import Perception
from .planner import Planner
from .retry import (
    EmptyModelResponseError,
    ErrorKind,
    RetryPolicies,
    RunCancelled,
    call_with_retry,
    classify_error,
    interruptible_sleep,
    run_cancellable,
)

Callback = Callable[[dict], Any]

_ERROR_MESSAGES = {
    ErrorStatusEnum.REACH_MAXLOOP_ERROR: "Has reached max loop count",
    ErrorStatusEnum.SCREENSHOT_RETRY_ERROR: "Too many screenshot failures",
    ErrorStatusEnum.INVOKE_RETRY_ERROR: "Too many model invoke failures",
    ErrorStatusEnum.EXECUTE_RETRY_ERROR: "Too many action execute failures",
    ErrorStatusEnum.ENVIRONMENT_ERROR: "The environment error occurred when parsing the action",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class GUIAgent:
    """
    GUI 自动化智能体。

    每轮：获取截图 → 校验 → 写入对话 → 调用模型 → 写入预测 → 逐个执行动作。
    运行状态只由本类修改，结果通过 on_data / on_error 回调通知调用方，
    run() 本身不会抛出异常。
    """

    def __init__(
        self,
        operator: Operator,
        model: Union[ModelConfig, Planner],
        max_loop_count: int = MAX_LOOP_COUNT,
        max_snapshot_errors: int = MAX_SNAPSHOT_ERR_CNT,
        retry: Optional[RetryPolicies] = None,
        signal: Optional[asyncio.Event] = None,
        system_prompt: Optional[str] = None,
        ui_tars_version: UITarsModelVersion = UITarsModelVersion.V1_0,
        loop_interval: float = 0,
        snapshot_retry_interval: float = SNAPSHOT_RETRY_INTERVAL,
        on_data: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.operator = operator
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.model = Planner(model, logger=self.logger) if isinstance(model, ModelConfig) else model
        self.max_loop_count = max_loop_count
        self.max_snapshot_errors = max_snapshot_errors
        self.retry = retry or RetryPolicies()
        self.signal = signal or asyncio.Event()
        self._resume = asyncio.Event()
        self._resume.set()
        self.ui_tars_version = ui_tars_version
        self.loop_interval = loop_interval
        self.snapshot_retry_interval = snapshot_retry_interval
        self.on_data = on_data
        self.on_error = on_error
        self.perception = Perception(self.logger)
        self.system_prompt = system_prompt or self._build_system_prompt()

    def _build_system_prompt(self) -> str:
        action_spaces = action_spaces_of(self.operator)
        if not action_spaces:
            return SYSTEM_PROMPT
        return SYSTEM_PROMPT_TEMPLATE.format(action_spaces="\n".join(action_spaces))

    def stop(self):
        """从外部请求停止当前运行"""
        self.signal.set()

    def pause(self):
        """在下一轮开始前暂停，直到 resume() 或 stop()"""
        self._resume.clear()

    def resume(self):
        self._resume.set()

    @property
    def is_paused(self) -> bool:
        return not self._resume.is_set()

    async def _wait_if_paused(self, state: RunState):
        if not self.is_paused:
            return
        self.logger.info("已暂停，等待恢复")
        state.transition(StatusEnum.PAUSE)
        await self._emit_data(state)
        await run_cancellable(self._resume.wait(), self.signal)
        state.transition(StatusEnum.RUNNING)
        self.logger.info("已恢复")
        await self._emit_data(state)

    async def _emit(self, callback: Optional[Callback], payload: dict):
        if callback is None:
            return
        try:
            result = callback(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("❌ 回调执行失败")

    async def _emit_data(self, state: RunState, last_n: int = 0):
        await self._emit(self.on_data, {"data": state.snapshot(last_n)})

    def _agent_error(self, code: ErrorStatusEnum, error: Optional[BaseException] = None) -> AgentError:
        stack = ""
        if error is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        if isinstance(error, openai.InternalServerError):
            return AgentError(ErrorStatusEnum.MODEL_SERVICE_ERROR, str(error), stack)

        prefix = _ERROR_MESSAGES.get(code)
        detail = str(error) if error is not None else ""
        if prefix is None:
            return AgentError(code, detail or "Unknown error occurred", stack)
        return AgentError(code, f"{prefix}: {detail}", stack)

    async def _take_screenshot(self):
        """带重试地截图；重试耗尽时返回 None，按无效截图处理"""
        try:
            return await call_with_retry(
                self.operator.screenshot, self.retry.screenshot, self.signal, name="screenshot"
            )
        except Exception as e:
            if classify_error(e, self.signal) is ErrorKind.CANCELLED:
                raise RunCancelled("screenshot aborted") from e
            self.logger.error(f"❌ 截图失败: {e}")
            return None

    async def _execute(self, state: RunState, prediction: str, action: ParsedAction, context: ScreenshotContext):
        """执行单个动作；失败只记录日志，不中断本轮"""
        params = ExecuteParams(
            prediction=prediction,
            parsed_prediction=action,
            screen_width=context.width,
            screen_height=context.height,
            scale_factor=context.scale_factor,
            factors=self.model.factors,
        )
        try:
            output = await call_with_retry(
                functools.partial(self.operator.execute, params),
                self.retry.execute,
                self.signal,
                name="execute",
            )
        except Exception as e:
            if classify_error(e, self.signal) is ErrorKind.CANCELLED:
                raise RunCancelled("execute aborted") from e
            self.logger.error(f"❌ 执行失败 {action.action_type}: {e}")
            return

        if output is None or not output.status:
            return
        status = coerce_status(output.status)
        if status is None:
            self.logger.warning(f"⚠ 忽略无法识别的状态 {output.status!r}")
        elif status == StatusEnum.PAUSE:
            self.pause()
        elif not state.transition(status):
            self.logger.warning(f"⚠ 忽略回退的状态 {state.status.value} -> {status.value}")

    async def _notify_user_stop(self):
        """取消后通知 Operator 做清理"""
        params = ExecuteParams(
            prediction="",
            parsed_prediction=ParsedAction(
                thought="",
                reflection=None,
                action_type=InternalActionSpaces.USER_STOP,
                action_inputs={},
            ),
            screen_width=0,
            screen_height=0,
            scale_factor=1,
            factors=(0, 0),
        )
        try:
            await self.operator.execute(params)
        except Exception as e:
            self.logger.error(f"❌ user_stop 通知失败: {e}")

    async def run(self, instruction: str):
        """
        执行任务的主循环。
        """
        now = _now_ms()
        state = RunState(
            instruction=instruction,
            system_prompt=self.system_prompt,
            model_name=self.model.model_name,
            log_time=now,
            conversation=[Turn(author="human", value=instruction, timing=Timing.between(now, now))],
        )
        self.logger.info(
            f"run: model={state.model_name}, version={self.ui_tars_version.value}, "
            f"max_loop_count={self.max_loop_count}"
        )

        state.transition(StatusEnum.RUNNING)
        await self._emit_data(state)

        failed = False
        empty_streak = 0
        try:
            while True:
                self.logger.info(f"{'=' * 20} Step {state.loop_count + 1}/{self.max_loop_count} {'=' * 20}")

                if state.status == StatusEnum.RUNNING:
                    await self._wait_if_paused(state)

                if state.status != StatusEnum.RUNNING or self.signal.is_set():
                    state.transition(StatusEnum.END)
                    break

                if state.loop_count >= self.max_loop_count:
                    state.error = self._agent_error(ErrorStatusEnum.REACH_MAXLOOP_ERROR)
                    state.transition(StatusEnum.MAX_LOOP_EXCEEDED)
                    break

                if state.screenshot_error_count >= self.max_snapshot_errors:
                    state.error = self._agent_error(ErrorStatusEnum.SCREENSHOT_RETRY_ERROR)
                    state.transition(StatusEnum.MAX_LOOP_EXCEEDED)
                    break

                # 1. 感知
                state.loop_count += 1
                start = _now_ms()
                snapshot = await self._take_screenshot()
                context = self.perception.inspect(snapshot)
                if context is None:
                    # 截图无效不占用循环次数
                    state.loop_count -= 1
                    state.screenshot_error_count += 1
                    self.logger.warning(f"⚠ 截图无效，{self.snapshot_retry_interval}s 后重试")
                    await interruptible_sleep(self.snapshot_retry_interval, self.signal)
                    continue

                state.conversation.append(Turn(
                    author="human",
                    value=IMAGE_PLACEHOLDER,
                    timing=Timing.between(start, _now_ms()),
                    screenshot_base64=snapshot.base64,
                    screenshot_context=context,
                ))
                await self._emit_data(state, last_n=1)

                # 2. 规划
                messages, images = to_vlm_model_format(state.conversation, state.system_prompt)
                messages, images = process_vlm_params(messages, images)
                params = InvokeParams(
                    conversations=messages,
                    images=images,
                    screen_context={"width": context.width, "height": context.height},
                    scale_factor=context.scale_factor,
                    ui_tars_version=self.ui_tars_version,
                )
                try:
                    output = await call_with_retry(
                        functools.partial(self.model.invoke, params, self.signal),
                        self.retry.model,
                        self.signal,
                        name="model",
                    )
                except EmptyModelResponseError:
                    empty_streak += 1
                    if empty_streak >= 2:
                        self.logger.warning(f"⚠ 模型已连续 {empty_streak} 次返回空响应")
                    continue
                except Exception as e:
                    if classify_error(e, self.signal) is ErrorKind.CANCELLED:
                        raise RunCancelled("model invoke aborted") from e
                    state.error = self._agent_error(ErrorStatusEnum.INVOKE_RETRY_ERROR, e)
                    failed = True
                    state.transition(StatusEnum.END)
                    break
                empty_streak = 0

                state.total_tokens += output.cost_tokens
                state.total_time += output.cost_time
                self.logger.info(f"模型输出: {output.prediction}")

                state.conversation.append(Turn(
                    author="gpt",
                    value=get_summary(output.prediction),
                    timing=Timing.between(start, _now_ms()),
                    screenshot_context=context,
                    parsed_actions=output.parsed_actions,
                ))
                await self._emit_data(state, last_n=1)

                # 3. 执行
                for action in output.parsed_actions:
                    action_type = action.action_type
                    self.logger.info(f"动作: {action_type} {action.action_inputs}")

                    if action_type in TERMINAL_ACTIONS:
                        if action_type == InternalActionSpaces.ERROR_ENV:
                            state.error = self._agent_error(ErrorStatusEnum.ENVIRONMENT_ERROR)
                        state.transition(StatusEnum.END)
                        break
                    if action_type == InternalActionSpaces.MAX_LOOP:
                        state.error = self._agent_error(ErrorStatusEnum.REACH_MAXLOOP_ERROR)
                        state.transition(StatusEnum.MAX_LOOP_EXCEEDED)
                        break
                    if self.signal.is_set():
                        break

                    await self._execute(state, output.prediction, action, context)

                if self.loop_interval > 0:
                    await interruptible_sleep(self.loop_interval, self.signal)

        except RunCancelled:
            self.logger.info("请求已取消")
            state.transition(StatusEnum.END)
        except Exception as e:
            self.logger.exception("❌ 运行出错")
            state.error = self._agent_error(ErrorStatusEnum.UNKNOWN_ERROR, e)
            failed = True
            state.transition(StatusEnum.END)
        finally:
            if not state.is_terminal:
                state.transition(StatusEnum.END)
            if self.signal.is_set():
                await self._notify_user_stop()

            self.logger.info(f"结束状态: {state.status.value}")
            await self._emit_data(state)
            if failed:
                await self._emit(self.on_error, {"data": state.snapshot(), "error": state.error.to_dict()})

            self.logger.info(
                f"✓ Agent 执行完成 totalTokens={state.total_tokens}, totalTime={state.total_time}ms, "
                f"loopCount={state.loop_count}"
            )
