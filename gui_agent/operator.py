"""Operator 能力接口：截图与执行动作"""

import math
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .action_parser import round_half_up
from .constants import DEFAULT_FACTORS
from .models import ExecuteOutput, ExecuteParams, Factors, ScreenshotOutput


@runtime_checkable
class Operator(Protocol):
    """
    被控界面（桌面、浏览器、手机镜像）的执行者。

    只有 Operator 会真正进行系统或浏览器 I/O；两个方法都可能抛出异常，
    由控制循环按重试策略处理。
    """

    async def screenshot(self) -> ScreenshotOutput:
        ...

    async def execute(self, params: ExecuteParams) -> Optional[ExecuteOutput]:
        ...


def action_spaces_of(operator: object) -> List[str]:
    """读取 Operator 声明的动作空间，没有声明时返回空列表"""
    spaces = getattr(operator, "ACTION_SPACES", None)
    return list(spaces) if spaces else []


def parse_box_to_screen_coords(
    box_str: str,
    screen_width: float,
    screen_height: float,
    factors: Factors = DEFAULT_FACTORS,
) -> Dict[str, Optional[float]]:
    """
    把归一化框字符串转换为屏幕坐标中点。

        '[0.131,0.25,0.131,0.25]' 2560x1440 -> {'x': 335.36, 'y': 360.0}
    """
    if not box_str:
        return {"x": None, "y": None}

    try:
        coords = [float(num.strip()) for num in box_str.replace("[", "").replace("]", "").split(",")]
    except ValueError:
        return {"x": None, "y": None}
    if len(coords) < 2 or not all(math.isfinite(v) for v in coords):
        return {"x": None, "y": None}

    x1, y1 = coords[0], coords[1]
    x2 = coords[2] if len(coords) > 2 else x1
    y2 = coords[3] if len(coords) > 3 else y1
    width_factor, height_factor = factors

    return {
        "x": round_half_up((x1 + x2) / 2 * screen_width * width_factor) / width_factor,
        "y": round_half_up((y1 + y2) / 2 * screen_height * height_factor) / height_factor,
    }
