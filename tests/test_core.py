import asyncio

import pytest

from gui_agent.config import ModelConfig
from gui_agent.constants import IMAGE_PLACEHOLDER
from gui_agent.core import GUIAgent
from gui_agent.models import ErrorStatusEnum, ScreenshotOutput, StatusEnum
from gui_agent.planner import Planner
from gui_agent.retry import EmptyModelResponseError, RetryConfig, RetryPolicies
from tests.fakes import FakeModel, FakeOperator, make_fake_client, make_png_base64

INVALID_SCREENSHOT = ScreenshotOutput(base64="bm90LWFuLWltYWdl")


class Recorder:
    def __init__(self):
        self.data = []
        self.errors = []

    def on_data(self, payload):
        self.data.append(payload["data"])

    def on_error(self, payload):
        self.errors.append(payload)

    @property
    def final(self):
        return self.data[-1]


async def run_agent(operator, model, instruction="open settings", **kwargs):
    recorder = Recorder()
    kwargs.setdefault("snapshot_retry_interval", 0)
    agent = GUIAgent(operator, model, on_data=recorder.on_data, on_error=recorder.on_error, **kwargs)
    await asyncio.wait_for(agent.run(instruction), timeout=5)
    return recorder


@pytest.mark.asyncio
async def test_invalid_screenshot_does_not_consume_a_step(png_base64):
    operator = FakeOperator(screenshots=[INVALID_SCREENSHOT, ScreenshotOutput(base64=png_base64)])
    model = FakeModel(["Thought: done\nAction: finished()"])

    recorder = await run_agent(operator, model)

    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 1
    assert recorder.final.screenshot_error_count == 1
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_finished_stops_remaining_actions():
    operator = FakeOperator()
    model = FakeModel(["Thought: go\nAction: click(start_box='(100,200)')\n\nfinished()\n\ntype(content='x')"])

    recorder = await run_agent(operator, model)

    assert operator.executed == ["click"]
    assert len(model.calls) == 1
    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 1


@pytest.mark.asyncio
async def test_cancel_after_invoke_skips_execution():
    signal = asyncio.Event()
    operator = FakeOperator()
    model = FakeModel(["Action: click(start_box='(100,200)')"], before_return=signal.set)

    recorder = await run_agent(operator, model, signal=signal)

    assert "click" not in operator.executed
    assert operator.executed == ["user_stop"]
    assert recorder.final.status == StatusEnum.END
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_loop_budget_exhausted():
    operator = FakeOperator()
    model = FakeModel(["Action: click(start_box='(1,2)')"])

    recorder = await run_agent(operator, model, max_loop_count=3)

    assert operator.executed == ["click"] * 3
    assert recorder.final.status == StatusEnum.MAX_LOOP_EXCEEDED
    assert recorder.final.loop_count == 3
    assert recorder.final.error.code == ErrorStatusEnum.REACH_MAXLOOP_ERROR
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_screenshot_budget_exhausted():
    operator = FakeOperator(screenshots=[INVALID_SCREENSHOT])
    model = FakeModel(["Action: finished()"])

    recorder = await run_agent(operator, model, max_snapshot_errors=3)

    assert model.calls == []
    assert recorder.final.status == StatusEnum.MAX_LOOP_EXCEEDED
    assert recorder.final.loop_count == 0
    assert recorder.final.screenshot_error_count == 3
    assert recorder.final.error.code == ErrorStatusEnum.SCREENSHOT_RETRY_ERROR


@pytest.mark.asyncio
async def test_screenshot_errors_are_retried():
    operator = FakeOperator(screenshots=[RuntimeError("capture failed"), ScreenshotOutput(base64=make_png_base64())])
    model = FakeModel(["Action: finished()"])

    recorder = await run_agent(
        operator, model, retry=RetryPolicies(screenshot=RetryConfig(max_retries=1))
    )

    assert operator.screenshot_calls == 2
    assert recorder.final.screenshot_error_count == 0
    assert recorder.final.loop_count == 1


@pytest.mark.asyncio
async def test_screenshot_exception_counts_as_invalid():
    operator = FakeOperator(screenshots=[RuntimeError("capture failed"), ScreenshotOutput(base64=make_png_base64())])
    model = FakeModel(["Action: finished()"])

    recorder = await run_agent(operator, model)

    assert recorder.final.screenshot_error_count == 1
    assert recorder.final.status == StatusEnum.END


@pytest.mark.asyncio
async def test_model_failure_reports_error_once():
    operator = FakeOperator()
    model = FakeModel([RuntimeError("boom")])

    recorder = await run_agent(operator, model, retry=RetryPolicies(model=RetryConfig(max_retries=2)))

    assert len(model.calls) == 3
    assert recorder.final.status == StatusEnum.END
    assert len(recorder.errors) == 1
    error = recorder.errors[0]["error"]
    assert error["code"] == ErrorStatusEnum.INVOKE_RETRY_ERROR
    assert error["message"] == "Too many model invoke failures: boom"
    assert operator.executed == []


@pytest.mark.asyncio
async def test_empty_response_is_recoverable():
    operator = FakeOperator()
    model = FakeModel([EmptyModelResponseError("empty"), "Action: finished()"])

    recorder = await run_agent(operator, model)

    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 2
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_execute_failure_is_retried_then_loop_continues():
    operator = FakeOperator(fail_on={"click"})
    model = FakeModel(["Action: click(start_box='(1,2)')", "Action: finished()"])

    recorder = await run_agent(operator, model, retry=RetryPolicies(execute=RetryConfig(max_retries=1)))

    assert operator.executed == ["click", "click"]
    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 2
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_emission_order():
    operator = FakeOperator()
    model = FakeModel(["Thought: done\nAction: finished()"])

    recorder = await run_agent(operator, model)

    statuses = [state.status for state in recorder.data]
    assert statuses == [StatusEnum.RUNNING, StatusEnum.RUNNING, StatusEnum.RUNNING, StatusEnum.END]
    human, gpt = recorder.data[1].conversation, recorder.data[2].conversation
    assert [turn.author for turn in human] == ["human"]
    assert human[0].value == IMAGE_PLACEHOLDER
    assert human[0].screenshot_context.width == 320
    assert [turn.author for turn in gpt] == ["gpt"]
    assert gpt[0].value == "Thought: done\nAction: finished()"
    assert recorder.final.total_tokens == 5


@pytest.mark.asyncio
async def test_execute_status_ends_run():
    operator = FakeOperator(execute_results={"click": StatusEnum.END})
    model = FakeModel(["Action: click(start_box='(1,2)')"])

    recorder = await run_agent(operator, model)

    assert operator.executed == ["click"]
    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 1


@pytest.mark.asyncio
async def test_max_loop_action():
    model = FakeModel(["Action: max_loop()"])

    recorder = await run_agent(FakeOperator(), model)

    assert recorder.final.status == StatusEnum.MAX_LOOP_EXCEEDED
    assert recorder.final.error.code == ErrorStatusEnum.REACH_MAXLOOP_ERROR


@pytest.mark.asyncio
async def test_error_env_action_records_error():
    recorder = await run_agent(FakeOperator(), FakeModel(["Action: error_env()"]))

    assert recorder.final.status == StatusEnum.END
    assert recorder.final.error.code == ErrorStatusEnum.ENVIRONMENT_ERROR
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_system_prompt_uses_operator_action_spaces():
    class TapOperator(FakeOperator):
        ACTION_SPACES = ["tap(start_box='[x1, y1, x2, y2]')", "finished()"]

    model = FakeModel(["Action: finished()"])
    agent = GUIAgent(TapOperator(), model, snapshot_retry_interval=0)

    await agent.run("open settings")

    assert "tap(start_box=" in agent.system_prompt
    first_message = model.calls[0].conversations[0].value
    assert first_message == agent.system_prompt + "open settings"


@pytest.mark.asyncio
async def test_in_flight_model_call_is_cancelled():
    operator = FakeOperator()
    planner = Planner(ModelConfig(model="ui-tars", api_key="test"), client=make_fake_client(hang=True))
    recorder = Recorder()
    agent = GUIAgent(
        operator, planner, on_data=recorder.on_data, on_error=recorder.on_error, snapshot_retry_interval=0
    )
    asyncio.get_running_loop().call_later(0.05, agent.stop)

    await asyncio.wait_for(agent.run("open settings"), timeout=5)

    assert recorder.final.status == StatusEnum.END
    assert recorder.errors == []
    assert operator.executed == ["user_stop"]


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited():
    received = []

    async def on_data(payload):
        await asyncio.sleep(0)
        received.append(payload["data"].status)

    agent = GUIAgent(FakeOperator(), FakeModel(["Action: finished()"]), on_data=on_data, snapshot_retry_interval=0)
    await agent.run("open settings")

    assert received[-1] == StatusEnum.END
    assert len(received) == 4


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_run():
    def on_data(payload):
        raise RuntimeError("listener crashed")

    operator = FakeOperator()
    agent = GUIAgent(operator, FakeModel(["Action: click(start_box='(1,2)')\n\nfinished()"]), on_data=on_data)
    await agent.run("open settings")

    assert operator.executed == ["click"]


@pytest.mark.asyncio
async def test_unexpected_error_is_reported():
    class BrokenModel(FakeModel):
        @property
        def factors(self):
            raise RuntimeError("no factors")

    operator = FakeOperator()
    recorder = await run_agent(operator, BrokenModel(["Action: click(start_box='(1,2)')"]))

    assert recorder.final.status == StatusEnum.END
    assert len(recorder.errors) == 1
    assert recorder.errors[0]["error"]["code"] == ErrorStatusEnum.UNKNOWN_ERROR
    assert operator.executed == []


@pytest.mark.parametrize("status, expected", [
    ("call_user", StatusEnum.END),
    ("user_stopped", StatusEnum.END),
    ("error", StatusEnum.END),
    ("end", StatusEnum.END),
])
@pytest.mark.asyncio
async def test_operator_status_names_end_run(status, expected):
    operator = FakeOperator(execute_results={"click": status})
    model = FakeModel(["Action: click(start_box='(1,2)')"])

    recorder = await run_agent(operator, model)

    assert operator.executed == ["click"]
    assert recorder.final.status == expected
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_unknown_operator_status_is_ignored():
    operator = FakeOperator(execute_results={"click": "teleported"})
    model = FakeModel(["Action: click(start_box='(1,2)')", "Action: finished()"])

    recorder = await run_agent(operator, model)

    assert operator.executed == ["click"]
    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 2
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_paused_agent_waits_for_resume():
    operator = FakeOperator()
    recorder = Recorder()
    agent = GUIAgent(operator, FakeModel(["Action: finished()"]), on_data=recorder.on_data)
    agent.pause()

    task = asyncio.ensure_future(agent.run("open settings"))
    await asyncio.sleep(0.05)

    assert operator.screenshot_calls == 0
    assert recorder.data[-1].status == StatusEnum.PAUSE
    assert not task.done()

    agent.resume()
    await asyncio.wait_for(task, timeout=5)

    statuses = [state.status for state in recorder.data]
    assert statuses[:3] == [StatusEnum.RUNNING, StatusEnum.PAUSE, StatusEnum.RUNNING]
    assert operator.screenshot_calls == 1
    assert recorder.final.status == StatusEnum.END


@pytest.mark.asyncio
async def test_stop_while_paused_ends_run():
    operator = FakeOperator()
    recorder = Recorder()
    agent = GUIAgent(operator, FakeModel(["Action: finished()"]), on_data=recorder.on_data)
    agent.pause()
    asyncio.get_running_loop().call_later(0.05, agent.stop)

    await asyncio.wait_for(agent.run("open settings"), timeout=5)

    assert operator.screenshot_calls == 0
    assert recorder.final.status == StatusEnum.END
    assert operator.executed == ["user_stop"]


@pytest.mark.asyncio
async def test_operator_pause_status_pauses_next_step():
    operator = FakeOperator(execute_results={"click": "pause"})
    model = FakeModel(["Action: click(start_box='(1,2)')", "Action: finished()"])
    recorder = Recorder()
    agent = GUIAgent(operator, model, on_data=recorder.on_data)

    task = asyncio.ensure_future(agent.run("open settings"))
    await asyncio.sleep(0.05)

    assert agent.is_paused
    assert operator.screenshot_calls == 1

    agent.resume()
    await asyncio.wait_for(task, timeout=5)

    assert StatusEnum.PAUSE in [state.status for state in recorder.data]
    assert recorder.final.status == StatusEnum.END
    assert recorder.final.loop_count == 2


@pytest.mark.asyncio
async def test_stop_interrupts_screenshot_backoff():
    operator = FakeOperator(screenshots=[INVALID_SCREENSHOT])
    agent = GUIAgent(operator, FakeModel(["Action: finished()"]), snapshot_retry_interval=30)
    asyncio.get_running_loop().call_later(0.05, agent.stop)

    await asyncio.wait_for(agent.run("open settings"), timeout=2)

    assert operator.screenshot_calls == 1
