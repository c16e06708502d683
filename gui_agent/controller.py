"""执行模块：基于 Playwright 页面的 Operator 实现"""

import asyncio
import base64
import logging
from typing import Dict, Optional

from playwright.async_api import Page

from .models import ExecuteOutput, ExecuteParams, ScreenshotOutput
from .operator import parse_box_to_screen_coords

KEY_MAPPINGS: Dict[str, str] = {
    "enter": "Enter",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "space": "Space",
    "up": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "arrowup": "ArrowUp",
    "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft",
    "arrowright": "ArrowRight",
    "backspace": "Backspace",
    "delete": "Delete",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "ctrl": "Control",
    "control": "Control",
    "alt": "Alt",
    "shift": "Shift",
    "cmd": "Meta",
    "command": "Meta",
    "meta": "Meta",
}

SCROLL_DELTA = 500


class PlaywrightController:
    """执行模块：在浏览器页面上截图并执行解析出的动作"""

    ACTION_SPACES = [
        "click(start_box='[x1, y1, x2, y2]')",
        "left_double(start_box='[x1, y1, x2, y2]')",
        "right_single(start_box='[x1, y1, x2, y2]')",
        "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
        "hotkey(key='')",
        "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
        "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
        "navigate(url='')",
        "wait() #Sleep for 5s and take a screenshot to check for any changes.",
        "finished()",
        "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
    ]

    def __init__(self, page: Page, action_delay: float = 0.8, logger: Optional[logging.Logger] = None):
        self.page = page
        self.action_delay = action_delay
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def screenshot(self) -> ScreenshotOutput:
        """截取当前可见区域"""
        buffer = await self.page.screenshot(full_page=False, type="png")
        scale_factor = await self.page.evaluate("() => window.devicePixelRatio") or 1
        viewport = self.page.viewport_size or {}
        self.logger.info(f"✓ 截图完成 viewport={viewport} scale_factor={scale_factor}")
        return ScreenshotOutput(
            base64=base64.b64encode(buffer).decode("utf-8"),
            scale_factor=scale_factor,
            width=viewport.get("width"),
            height=viewport.get("height"),
        )

    def _point(self, box_str: str, params: ExecuteParams):
        """把归一化框换算为页面 CSS 像素坐标"""
        coords = parse_box_to_screen_coords(
            box_str, params.screen_width, params.screen_height, params.factors
        )
        if coords["x"] is None or coords["y"] is None:
            return None
        # 截图尺寸是设备像素，鼠标事件使用 CSS 像素
        scale = params.scale_factor or 1
        return coords["x"] / scale, coords["y"] / scale

    async def execute(self, params: ExecuteParams) -> Optional[ExecuteOutput]:
        """
        执行单个动作，失败时抛出异常交给调用方重试。
        """
        action = params.parsed_prediction
        action_type = action.action_type
        inputs = action.action_inputs

        if action_type in ("finished", "call_user", "user_stop"):
            self.logger.info(f"✓ {action_type}")
            return None

        if action_type in ("click", "left_click", "left_single"):
            await self._click(self._require_point(inputs.get("start_box", ""), params))
        elif action_type in ("left_double", "double_click"):
            await self._click(self._require_point(inputs.get("start_box", ""), params), click_count=2)
        elif action_type in ("right_single", "right_click"):
            await self._click(self._require_point(inputs.get("start_box", ""), params), button="right")
        elif action_type == "drag":
            await self._drag(
                self._require_point(inputs.get("start_box", ""), params),
                self._require_point(inputs.get("end_box", ""), params),
            )
        elif action_type == "type":
            await self._type(inputs.get("content", ""))
        elif action_type == "hotkey":
            await self._hotkey(inputs.get("key") or inputs.get("hotkey", ""))
        elif action_type == "scroll":
            await self._scroll(inputs.get("direction", "down"), self._point(inputs.get("start_box", ""), params))
        elif action_type == "navigate":
            await self._navigate(inputs.get("url", ""))
        elif action_type == "wait":
            await asyncio.sleep(5)
            self.logger.info("✓ 等待 5s")
        else:
            self.logger.warning(f"⚠ 未知 action: {action_type}")
            return None

        await asyncio.sleep(self.action_delay)
        return None

    def _require_point(self, box_str: str, params: ExecuteParams):
        point = self._point(box_str, params)
        if point is None:
            raise ValueError(f"缺少坐标: start_box={box_str!r}")
        return point

    async def _click(self, point, button: str = "left", click_count: int = 1):
        """点击坐标"""
        x, y = point
        await self.page.mouse.move(x, y)
        await self.page.mouse.click(x, y, button=button, click_count=click_count)
        self.logger.info(f"✓ 点击 ({x:.1f}, {y:.1f}) button={button} count={click_count}")

    async def _drag(self, start, end):
        """拖拽"""
        await self.page.mouse.move(*start)
        await self.page.mouse.down()
        await self.page.mouse.move(*end, steps=10)
        await self.page.mouse.up()
        self.logger.info(f"✓ 拖拽 {start} -> {end}")

    async def _type(self, content: str):
        """输入文本，末尾的换行表示回车提交"""
        content = content.strip()
        if not content:
            self.logger.warning("⚠ 没有可输入的内容")
            return

        submit = content.endswith("\\n") or content.endswith("\n")
        text = content[:-2] if content.endswith("\\n") else content.rstrip("\n")
        await self.page.keyboard.type(text, delay=20)
        if submit:
            await self.page.keyboard.press("Enter")
        self.logger.info(f"✓ 输入 '{text}'" + (" 并回车" if submit else ""))

    async def _hotkey(self, key_str: str):
        """按键组合，按空格分隔"""
        if not key_str:
            self.logger.warning("⚠ 没有指定按键")
            return
        keys = [KEY_MAPPINGS.get(k.lower(), k) for k in key_str.split()]
        await self.page.keyboard.press("+".join(keys))
        self.logger.info(f"✓ 按键 {'+'.join(keys)}")

    async def _scroll(self, direction: str, point=None):
        """滚动"""
        if point is not None:
            await self.page.mouse.move(*point)
        direction = (direction or "down").lower()
        delta_x, delta_y = {
            "up": (0, -SCROLL_DELTA),
            "down": (0, SCROLL_DELTA),
            "left": (-SCROLL_DELTA, 0),
            "right": (SCROLL_DELTA, 0),
        }.get(direction, (0, SCROLL_DELTA))
        await self.page.mouse.wheel(delta_x, delta_y)
        self.logger.info(f"✓ 滚动 {direction}")

    async def _navigate(self, url: str):
        """打开网址"""
        if not url:
            raise ValueError("navigate 缺少 url")
        if not url.startswith(("http://", "https://", "file://", "about:")):
            url = f"https://{url}"
        await self.page.goto(url)
        self.logger.info(f"✓ 打开 {url}")
