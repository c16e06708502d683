"""GUI Agent 包

包含各个模块：
- models: 数据模型
- action_parser: 动作解析模块
- perception: 感知模块（截图校验与压缩）
- memory: 记忆模块（对话 → 模型输入）
- planner: 规划模块（模型调用）
- controller: 执行模块（Playwright Operator）
- retry: 重试与取消
- core: 核心 Agent 类
"""

from .models import (
    AgentError,
    ErrorStatusEnum,
    ExecuteOutput,
    ExecuteParams,
    ParsedAction,
    RunState,
    ScreenshotOutput,
    StatusEnum,
    Turn,
    UITarsModelVersion,
)
from .action_parser import action_parser, parse_action_vlm
from .config import ModelConfig
from .operator import Operator, parse_box_to_screen_coords
from .perception import Perception
from .planner import Planner
from .controller import PlaywrightController
from .retry import RetryConfig, RetryPolicies
from .core import GUIAgent

__all__ = [
    "AgentError",
    "ErrorStatusEnum",
    "ExecuteOutput",
    "ExecuteParams",
    "ParsedAction",
    "RunState",
    "ScreenshotOutput",
    "StatusEnum",
    "Turn",
    "UITarsModelVersion",
    "action_parser",
    "parse_action_vlm",
    "ModelConfig",
    "Operator",
    "parse_box_to_screen_coords",
    "Perception",
    "Planner",
    "PlaywrightController",
    "RetryConfig",
    "RetryPolicies",
    "GUIAgent",
]
