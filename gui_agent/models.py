"""数据模型定义"""

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple, Union

Factors = Tuple[int, int]


class StatusEnum(str, Enum):
    """一次运行的状态，只允许向前迁移"""
    INIT = "init"
    RUNNING = "running"
    PAUSE = "pause"
    MAX_LOOP_EXCEEDED = "max_loop_exceeded"
    END = "end"


# 状态的先后顺序，两个终态同级
_STATUS_ORDER = {
    StatusEnum.INIT: 0,
    StatusEnum.RUNNING: 1,
    StatusEnum.PAUSE: 1,
    StatusEnum.MAX_LOOP_EXCEEDED: 2,
    StatusEnum.END: 2,
}

# Operator 可能返回的其他状态名，都视为结束
_STATUS_ALIASES = {
    "call_user": StatusEnum.END,
    "user_stopped": StatusEnum.END,
    "error": StatusEnum.END,
    "max_loop": StatusEnum.MAX_LOOP_EXCEEDED,
}


def coerce_status(value: Union[StatusEnum, str, None]) -> Optional[StatusEnum]:
    """把 Operator 返回的状态转换为 StatusEnum，无法识别时返回 None"""
    if value is None:
        return None
    if isinstance(value, StatusEnum):
        return value
    key = str(value).strip().lower()
    if key in _STATUS_ALIASES:
        return _STATUS_ALIASES[key]
    try:
        return StatusEnum(key)
    except ValueError:
        return None


class ErrorStatusEnum(IntEnum):
    """对外暴露的错误码"""
    REACH_MAXLOOP_ERROR = -100000
    SCREENSHOT_RETRY_ERROR = -100001
    INVOKE_RETRY_ERROR = -100002
    EXECUTE_RETRY_ERROR = -100003
    MODEL_SERVICE_ERROR = -100004
    ENVIRONMENT_ERROR = -100005
    UNKNOWN_ERROR = -100099


class UITarsModelVersion(str, Enum):
    V1_0 = "1.0"
    V1_5 = "1.5"
    DOUBAO_1_5_15B = "doubao-1.5-15B"
    DOUBAO_1_5_20B = "doubao-1.5-20B"


class AgentError(Exception):
    """带错误码的运行错误，通过 on_error 回调交给调用方"""

    def __init__(self, code: ErrorStatusEnum, message: str, stack: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.stack = stack or ""

    def to_dict(self) -> Dict[str, Any]:
        return {"code": int(self.code), "message": self.message, "stack": self.stack}


@dataclass
class Timing:
    """单轮耗时，单位毫秒"""
    start: int
    end: int
    cost: int

    @classmethod
    def between(cls, start: int, end: int) -> "Timing":
        return cls(start=start, end=end, cost=end - start)


@dataclass
class ScreenshotContext:
    width: int
    height: int
    scale_factor: float = 1
    mime: str = "image/png"


@dataclass
class ParsedAction:
    """从模型输出中解析出的单个动作"""
    thought: str
    reflection: Optional[str]
    action_type: str
    action_inputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Turn:
    """对话中的一轮：human 轮携带截图，gpt 轮携带模型预测"""
    author: str  # human|gpt
    value: str
    timing: Timing
    screenshot_base64: Optional[str] = None
    screenshot_context: Optional[ScreenshotContext] = None
    parsed_actions: Optional[List[ParsedAction]] = None


@dataclass
class Message:
    """送入模型前的精简对话条目"""
    author: str
    value: str


@dataclass
class ScreenshotOutput:
    """Operator.screenshot() 的返回值"""
    base64: str
    scale_factor: float = 1
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class ExecuteParams:
    """Operator.execute() 所需的全部上下文"""
    prediction: str
    parsed_prediction: ParsedAction
    screen_width: int
    screen_height: int
    scale_factor: float
    factors: Factors


@dataclass
class ExecuteOutput:
    status: Optional[StatusEnum] = None


@dataclass
class InvokeParams:
    conversations: List[Message]
    images: List[str]
    screen_context: Optional[Dict[str, int]] = None
    scale_factor: float = 1
    ui_tars_version: UITarsModelVersion = UITarsModelVersion.V1_0


@dataclass
class InvokeOutput:
    prediction: str
    parsed_actions: List[ParsedAction]
    cost_time: int = 0
    cost_tokens: int = 0


@dataclass
class RunState:
    """单次 run() 的全部可变状态，只由控制循环修改"""
    instruction: str
    system_prompt: str
    model_name: str
    log_time: int
    status: StatusEnum = StatusEnum.INIT
    conversation: List[Turn] = field(default_factory=list)
    loop_count: int = 0
    screenshot_error_count: int = 0
    total_tokens: int = 0
    total_time: int = 0
    error: Optional[AgentError] = None

    def transition(self, status: Union[StatusEnum, str]) -> bool:
        """迁移到新状态；回退的迁移被忽略并返回 False"""
        status = StatusEnum(status)
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            return False
        if self.is_terminal and status != self.status:
            return False
        self.status = status
        return True

    @property
    def is_terminal(self) -> bool:
        return self.status in (StatusEnum.END, StatusEnum.MAX_LOOP_EXCEEDED)

    def snapshot(self, last_n: int = 0) -> "RunState":
        """生成对外发送的快照，last_n 控制携带的最近轮数"""
        turns = list(self.conversation[-last_n:]) if last_n > 0 else []
        return replace(self, conversation=turns)
