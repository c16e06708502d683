"""记忆模块：把对话历史转换为模型输入"""

import re
from typing import Any, Dict, List, Tuple

from .constants import IMAGE_PLACEHOLDER, MAX_IMAGE_LENGTH
from .models import Message, Turn

_REFLECTION_BLOCK_RE = re.compile(r"Reflection:[\s\S]*?(?=Action_Summary:|Action:|$)")


def get_summary(prediction: str) -> str:
    """去掉预测中的 Reflection 段落，只保留摘要与动作"""
    return _REFLECTION_BLOCK_RE.sub("", prediction).strip()


def to_vlm_model_format(conversation: List[Turn], system_prompt: str) -> Tuple[List[Message], List[str]]:
    """
    把对话轮次转换为 (消息列表, 截图列表)。

    系统提示词拼接在第一条 human 消息之前。
    """
    messages = []
    for idx, turn in enumerate(conversation):
        value = turn.value
        if idx == 0 and turn.author == "human":
            value = f"{system_prompt}{value}"
        messages.append(Message(author=turn.author, value=value))

    images = [
        turn.screenshot_base64
        for turn in conversation
        if turn.value == IMAGE_PLACEHOLDER and turn.screenshot_base64
    ]
    return messages, images


def process_vlm_params(
    messages: List[Message],
    images: List[str],
    max_images: int = MAX_IMAGE_LENGTH,
) -> Tuple[List[Message], List[str]]:
    """滑动窗口：只保留最近 max_images 张截图，同时删除最早的对应占位消息"""
    if len(images) <= max_images:
        return messages, images

    excess_count = len(images) - max_images
    images = images[excess_count:]

    windowed = []
    to_remove = excess_count
    for message in messages:
        if to_remove > 0 and message.value == IMAGE_PLACEHOLDER:
            to_remove -= 1
            continue
        windowed.append(message)

    return windowed, images


def convert_to_openai_messages(messages: List[Message], images: List[str]) -> List[Dict[str, Any]]:
    """转换为 OpenAI chat completion 的 messages 参数"""
    openai_messages: List[Dict[str, Any]] = []
    image_index = 0

    for message in messages:
        if message.value == IMAGE_PLACEHOLDER:
            # 多出来的占位符直接丢弃
            if image_index < len(images):
                openai_messages.append({
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/png;base64,{images[image_index]}"},
                        }
                    ],
                })
                image_index += 1
        else:
            openai_messages.append({
                "role": "user" if message.author == "human" else "assistant",
                "content": message.value,
            })

    return openai_messages
