"""常量定义：坐标网格、像素预算、循环上限与系统提示词"""

from .models import UITarsModelVersion

# 模型训练时使用的坐标空间 [宽, 高]
DEFAULT_FACTORS = (1000, 1000)

# smart resize 参数
MAX_RATIO = 200
IMAGE_FACTOR = 28
MIN_PIXELS = 100 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_0 = 2700 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_DOUBAO = 5120 * IMAGE_FACTOR * IMAGE_FACTOR
MAX_PIXELS_V1_5 = 16384 * IMAGE_FACTOR * IMAGE_FACTOR

MAX_PIXELS_BY_VERSION = {
    UITarsModelVersion.V1_0: MAX_PIXELS_V1_0,
    UITarsModelVersion.V1_5: MAX_PIXELS_V1_5,
    UITarsModelVersion.DOUBAO_1_5_15B: MAX_PIXELS_DOUBAO,
    UITarsModelVersion.DOUBAO_1_5_20B: MAX_PIXELS_DOUBAO,
}

IMAGE_PLACEHOLDER = "<image>"
# 每次请求最多携带的截图数
MAX_IMAGE_LENGTH = 5

MAX_LOOP_COUNT = 25
MAX_SNAPSHOT_ERR_CNT = 10
# 截图无效时的等待秒数
SNAPSHOT_RETRY_INTERVAL = 1.0


class InternalActionSpaces:
    """不交给 Operator 执行、而是改变运行状态的动作"""
    CALL_USER = "call_user"
    ERROR_ENV = "error_env"
    FINISHED = "finished"
    MAX_LOOP = "max_loop"
    USER_STOP = "user_stop"


TERMINAL_ACTIONS = frozenset({
    InternalActionSpaces.CALL_USER,
    InternalActionSpaces.ERROR_ENV,
    InternalActionSpaces.FINISHED,
})

DEFAULT_ACTION_SPACES = [
    "click(start_box='[x1, y1, x2, y2]')",
    "left_double(start_box='[x1, y1, x2, y2]')",
    "right_single(start_box='[x1, y1, x2, y2]')",
    "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
    "hotkey(key='')",
    "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
    "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
    "wait() #Sleep for 5s and take a screenshot to check for any changes.",
    "finished()",
    "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
]

SYSTEM_PROMPT_TEMPLATE = """You are a GUI agent. You are given a task and your action history, with screenshots. You need to perform the next action to complete the task.

## Output Format
```
Thought: ...
Action: ...
```

## Action Space
{action_spaces}

## Note
- Use English in `Thought` part.
- Write a small plan and finally summarize your next action (with its target element) in one sentence in `Thought` part.

## User Instruction
"""

SYSTEM_PROMPT = SYSTEM_PROMPT_TEMPLATE.format(action_spaces="\n".join(DEFAULT_ACTION_SPACES))
