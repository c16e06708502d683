import asyncio
import base64
import io
from types import SimpleNamespace

from PIL import Image

from gui_agent.action_parser import action_parser
from gui_agent.models import ExecuteOutput, InvokeOutput, ScreenshotOutput


def make_png_base64(width: int = 320, height: int = 200, color=(255, 255, 255)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


class FakeOperator:
    """按顺序返回截图，记录执行过的动作"""

    def __init__(self, screenshots=None, execute_results=None, fail_on=()):
        self.screenshots = list(screenshots or [ScreenshotOutput(base64=make_png_base64())])
        self.execute_results = dict(execute_results or {})
        self.fail_on = set(fail_on)
        self.executed = []
        self.screenshot_calls = 0

    async def screenshot(self):
        self.screenshot_calls += 1
        item = self.screenshots.pop(0) if len(self.screenshots) > 1 else self.screenshots[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def execute(self, params):
        action_type = params.parsed_prediction.action_type
        self.executed.append(action_type)
        if action_type in self.fail_on:
            raise RuntimeError(f"{action_type} failed")
        status = self.execute_results.get(action_type)
        return ExecuteOutput(status=status) if status else None


class FakeModel:
    """按顺序返回预测文本；元素是异常时抛出"""

    factors = (1000, 1000)
    model_name = "fake-vlm"

    def __init__(self, predictions, before_return=None):
        self.predictions = list(predictions)
        self.before_return = before_return
        self.calls = []

    async def invoke(self, params, signal=None):
        self.calls.append(params)
        item = self.predictions.pop(0) if len(self.predictions) > 1 else self.predictions[0]
        if isinstance(item, Exception):
            raise item
        if self.before_return:
            self.before_return()
        return InvokeOutput(
            prediction=item,
            parsed_actions=action_parser(item, 1000, screen_context=params.screen_context),
            cost_time=10,
            cost_tokens=5,
        )


class FakeCompletions:
    def __init__(self, contents, hang=False):
        self.contents = list(contents)
        self.hang = hang
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.hang:
            await asyncio.Event().wait()
        content = self.contents.pop(0)
        if isinstance(content, Exception):
            raise content
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(total_tokens=42),
        )


def make_fake_client(contents=(), hang=False):
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(contents, hang=hang)))
