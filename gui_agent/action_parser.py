"""动作解析模块：把模型的自由文本预测解析为结构化动作

模型可能输出几种不同的文本格式：
  - bc 模式：``Thought: ... Action: ...``、``Reflection: ... Action_Summary: ...``
    或仅有 ``Action_Summary: ...``
  - o1 模式：``<Thought>...</Thought> Action_Summary: ... Action: ... </Output>``

动作部分是类似函数调用的语句 ``click(start_box='(100,200)')``，其中的坐标
是模型坐标空间（默认 1000x1000）下的整数，解析时统一换算为 [0, 1] 的归一化
坐标；若已知屏幕尺寸，再额外计算屏幕上的绝对像素中点。

本模块只有纯函数，不做任何 I/O。
"""

import logging
import math
import re
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .constants import DEFAULT_FACTORS, IMAGE_FACTOR, MAX_PIXELS_V1_5, MAX_RATIO, MIN_PIXELS
from .models import Factors, ParsedAction, UITarsModelVersion

logger = logging.getLogger(__name__)

# (thought, reflection)
Segment = Tuple[Optional[str], Optional[str]]

_THOUGHT_RE = re.compile(r"Thought: ([\s\S]+?)(?=\s*Action:|$)")
_REFLECTION_RE = re.compile(r"Reflection: ([\s\S]+?)Action_Summary: ([\s\S]+?)(?=\s*Action:|$)")
_SUMMARY_RE = re.compile(r"Action_Summary: (.+?)(?=\s*Action:|$)")

_O1_THOUGHT_RE = re.compile(r"<Thought>\s*(.*?)\s*</Thought>")
_O1_SUMMARY_RE = re.compile(r"\nAction_Summary:\s*(.*?)\s*Action:")
_O1_ACTION_RE = re.compile(r"\nAction:\s*(.*?)\s*</Output>")

_BOX_TOKEN_RE = re.compile(r"<\|box_start\|>|<\|box_end\|>")
_BBOX_TAG_RE = re.compile(r"<bbox>(.*?)</bbox>")
_POINT_TAG_RE = re.compile(r"<point>(.*?)</point>")
_FUNCTION_RE = re.compile(r"(\w+)\((.*)\)")
_ARG_PAIR_RE = re.compile(r"(?:[^,']|'[^']*')+")
_QUOTES_RE = re.compile(r"^['\"]|['\"]$")
_FLOAT_PREFIX_RE = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


# ──────────────────────────────────────────────
# smart resize：v1.5 模型的归一化网格
# ──────────────────────────────────────────────

def _round_by_factor(num: float, factor: int) -> int:
    return math.floor(num / factor + 0.5) * factor


def _floor_by_factor(num: float, factor: int) -> int:
    return math.floor(num / factor) * factor


def _ceil_by_factor(num: float, factor: int) -> int:
    return math.ceil(num / factor) * factor


def smart_resize_for_v15(
    height: int,
    width: int,
    max_ratio: int = MAX_RATIO,
    factor: int = IMAGE_FACTOR,
    min_pixels: int = MIN_PIXELS,
    max_pixels: int = MAX_PIXELS_V1_5,
) -> Optional[Tuple[int, int]]:
    """
    计算 v1.5 模型看到的网格尺寸，返回 (宽, 高)。

    这里并不真正缩放图片，只是得到坐标归一化用的除数。
    长宽比超过 max_ratio 时返回 None。
    """
    ratio = max(height, width) / min(height, width)
    if ratio > max_ratio:
        logger.error(f"absolute aspect ratio must be smaller than {max_ratio}, got {ratio}")
        return None

    w_bar = max(factor, _round_by_factor(width, factor))
    h_bar = max(factor, _round_by_factor(height, factor))

    if h_bar * w_bar > max_pixels:
        beta = math.sqrt((height * width) / max_pixels)
        h_bar = _floor_by_factor(height / beta, factor)
        w_bar = _floor_by_factor(width / beta, factor)
    elif h_bar * w_bar < min_pixels:
        beta = math.sqrt(min_pixels / (height * width))
        h_bar = _ceil_by_factor(height * beta, factor)
        w_bar = _ceil_by_factor(width * beta, factor)

    return w_bar, h_bar


# ──────────────────────────────────────────────
# 第一步：拆分 thought / reflection 与动作文本
# ──────────────────────────────────────────────

def _match_thought(text: str) -> Optional[Segment]:
    if "Thought:" not in text:
        return None
    match = _THOUGHT_RE.search(text)
    return (match.group(1).strip() if match else None), None


def _match_reflection(text: str) -> Optional[Segment]:
    if not text.startswith("Reflection:"):
        return None
    match = _REFLECTION_RE.search(text)
    if not match:
        return None, None
    return match.group(2).strip(), match.group(1).strip()


def _match_summary(text: str) -> Optional[Segment]:
    if not text.startswith("Action_Summary:"):
        return None
    match = _SUMMARY_RE.search(text)
    return (match.group(1).strip() if match else None), None


# 按优先级排列，第一个适用的匹配器生效
BC_SEGMENT_MATCHERS: Sequence[Callable[[str], Optional[Segment]]] = (
    _match_thought,
    _match_reflection,
    _match_summary,
)


def _split_bc(text: str) -> Tuple[Optional[str], Optional[str], str]:
    thought, reflection = None, None
    for matcher in BC_SEGMENT_MATCHERS:
        segment = matcher(text)
        if segment is not None:
            thought, reflection = segment
            break

    if "Action:" not in text:
        # 没有 Action 标记时把整段文本当作动作
        action_str = text
    else:
        action_str = text.split("Action:")[-1]
    return thought, reflection, action_str


def _split_o1(text: str) -> Tuple[Optional[str], Optional[str], str]:
    thought_match = _O1_THOUGHT_RE.search(text)
    summary_match = _O1_SUMMARY_RE.search(text)
    action_match = _O1_ACTION_RE.search(text)

    thought_content = thought_match.group(1) if thought_match else ""
    summary_content = summary_match.group(1) if summary_match else ""
    action_content = action_match.group(1) if action_match else ""

    thought = f"{thought_content}\n<Action_Summary>\n{summary_content}"
    return thought, None, action_content


# ──────────────────────────────────────────────
# 第三步：解析函数调用语法
# ──────────────────────────────────────────────

def _tag_to_tuple(match: "re.Match") -> str:
    return "(" + re.sub(r"\s+", ",", match.group(1).strip()) + ")"


def canonicalize_action(action_str: str) -> str:
    """
    把历史遗留的标签写法统一成 ``start_box='(x,y)'`` 形式：
      - 去掉 <|box_start|> / <|box_end|>
      - <bbox>x y x y</bbox> 与 <point>x y</point> 改写为 (x,y,...)
      - point= 改写为 start_box=
    """
    action_str = _BOX_TOKEN_RE.sub("", action_str)
    action_str = _BBOX_TAG_RE.sub(_tag_to_tuple, action_str)
    action_str = _POINT_TAG_RE.sub(_tag_to_tuple, action_str)
    return action_str.replace("point=", "start_box=")


def parse_action(action_str: str) -> Optional[Tuple[str, Dict[str, str]]]:
    """把 ``name(key='value', ...)`` 解析为 (函数名, 参数字典)，不是函数调用时返回 None"""
    action_str = canonicalize_action(action_str)
    match = _FUNCTION_RE.fullmatch(action_str.strip())
    if not match:
        logger.error(f"Failed to parse action '{action_str}': Not a function call")
        return None

    function_name, args_str = match.groups()
    kwargs: Dict[str, str] = {}
    if args_str.strip():
        for pair_match in _ARG_PAIR_RE.finditer(args_str):
            key, _, value = pair_match.group(0).partition("=")
            if not key:
                continue
            kwargs[key.strip()] = _QUOTES_RE.sub("", value.strip())

    return function_name, kwargs


# ──────────────────────────────────────────────
# 第四步：坐标归一化
# ──────────────────────────────────────────────

def _parse_float(raw: str) -> float:
    match = _FLOAT_PREFIX_RE.match(raw)
    return float(match.group(0)) if match else math.nan


def format_number(value: float) -> str:
    """
    按 JSON.stringify 的规则输出数字：整数不带小数部分，非有限值为 null，
    绝对值在 1e-6 到 1e21 之间时不用科学计数法，其余写作 1e-7 / 1e+21。
    """
    if not math.isfinite(value):
        return "null"
    if float(value).is_integer() and abs(value) < 1e21:
        return str(int(value))
    text = repr(float(value))
    if "e" not in text:
        return text
    mantissa, exponent = text.split("e")
    exponent = int(exponent)
    if -7 < exponent < 21:
        return format(Decimal(text), "f")
    sign = "+" if exponent > 0 else "-"
    return f"{mantissa}e{sign}{abs(exponent)}"


def dump_box(values: Sequence[float]) -> str:
    """以紧凑 JSON 数组形式保存归一化坐标"""
    return "[" + ",".join(format_number(v) for v in values) + "]"


def round_half_up(value: float) -> float:
    return math.floor(value + 0.5)


def normalize_box(raw_box: str, factors: Sequence[float]) -> List[float]:
    """把模型坐标字符串换算为归一化坐标；两个数时补齐为 [x, y, x, y]"""
    numbers = [n for n in re.sub(r"[()\[\]]", "", raw_box).split(",") if n != ""]
    values = [_parse_float(num) / factors[idx % 2] for idx, num in enumerate(numbers)]
    if len(values) == 2:
        values.extend(values)
    return values


def box_to_screen_coords(
    box: Sequence[float],
    screen_width: int,
    screen_height: int,
    factors: Factors,
    scale_factor: Optional[float] = None,
) -> List[float]:
    """
    计算归一化框中点在屏幕上的绝对像素坐标。

    先乘以坐标空间因子取整再除回去，使结果与模型坐标的粒度一致。
    任一坐标不是有限数字时返回空列表。
    """
    if not box:
        return []
    x1 = box[0]
    y1 = box[1] if len(box) > 1 else math.nan
    x2 = box[2] if len(box) > 2 else x1
    y2 = box[3] if len(box) > 3 else y1
    if not all(isinstance(v, (int, float)) and math.isfinite(v) for v in (x1, y1, x2, y2)):
        return []

    width_factor, height_factor = factors
    scale = scale_factor if scale_factor is not None else 1
    return [
        round_half_up((x1 + x2) / 2 * screen_width * width_factor) / width_factor * scale,
        round_half_up((y1 + y2) / 2 * screen_height * height_factor) / height_factor * scale,
    ]


# ──────────────────────────────────────────────
# 入口
# ──────────────────────────────────────────────

def parse_action_vlm(
    text: str,
    factors: Factors = DEFAULT_FACTORS,
    mode: str = "bc",
    screen_context: Optional[Dict[str, int]] = None,
    scale_factor: Optional[float] = None,
    model_version: UITarsModelVersion = UITarsModelVersion.V1_0,
) -> List[ParsedAction]:
    """
    解析模型的完整预测文本，每条动作语句生成一个 ParsedAction。

    同一次预测中的多个动作以空行分隔，共享同一段 thought / reflection。
    无法识别的语句得到 action_type='' 且 action_inputs={}，不会抛出异常。
    """
    screen_width = (screen_context or {}).get("width")
    screen_height = (screen_context or {}).get("height")

    smart_resize_factors = None
    if model_version == UITarsModelVersion.V1_5 and screen_width and screen_height:
        smart_resize_factors = smart_resize_for_v15(screen_height, screen_width)
    box_factors = smart_resize_factors or factors

    text = text.strip()
    if mode == "o1":
        thought, reflection, action_str = _split_o1(text)
    else:
        thought, reflection, action_str = _split_bc(text)

    actions: List[ParsedAction] = []
    for raw_str in action_str.split("\n\n"):
        instance = parse_action(raw_str.replace("\n", "\\n").lstrip())
        action_type = ""
        action_inputs: Dict[str, object] = {}

        if instance:
            action_type, params = instance
            for param_name, param in params.items():
                if not param:
                    continue
                trimmed = param.strip()
                if "start_box" in param_name or "end_box" in param_name:
                    box = normalize_box(trimmed, box_factors)
                    action_inputs[param_name] = dump_box(box)
                    if screen_width and screen_height:
                        coords_key = "start_coords" if "start_box" in param_name else "end_coords"
                        action_inputs[coords_key] = box_to_screen_coords(
                            box, screen_width, screen_height, factors, scale_factor
                        )
                else:
                    action_inputs[param_name] = trimmed

        actions.append(ParsedAction(
            thought=thought or "",
            reflection=reflection,
            action_type=action_type,
            action_inputs=action_inputs,
        ))

    return actions


def action_parser(
    prediction: str,
    factor: Union[int, Factors],
    screen_context: Optional[Dict[str, int]] = None,
    scale_factor: Optional[float] = None,
    mode: str = "bc",
    model_version: UITarsModelVersion = UITarsModelVersion.V1_0,
) -> List[ParsedAction]:
    """parse_action_vlm 的便捷入口，factor 可以是单个数字"""
    factors = tuple(factor) if isinstance(factor, (list, tuple)) else (factor, factor)
    return parse_action_vlm(prediction, factors, mode, screen_context, scale_factor, model_version)
