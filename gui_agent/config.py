"""配置：从环境变量（及 .env 文件）读取模型与运行参数"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .constants import MAX_LOOP_COUNT
from .models import UITarsModelVersion

# 加载 .env 文件中的环境变量
load_dotenv()

DEFAULT_MODEL_NAME = "ui-tars-1.5-7b"


@dataclass
class ModelConfig:
    """OpenAI 兼容接口的模型配置"""
    model: str = DEFAULT_MODEL_NAME
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: Optional[int] = None  # 为空时按模型版本取默认值
    temperature: float = 0
    top_p: float = 0.7
    timeout: float = 30.0

    @classmethod
    def from_env(cls, require_api_key: bool = False) -> "ModelConfig":
        api_key = os.getenv("OPENAI_API_KEY")
        if require_api_key and not api_key:
            raise ValueError("请设置环境变量 OPENAI_API_KEY，例如：export OPENAI_API_KEY='sk-...'")

        max_tokens = os.getenv("OPENAI_MAX_TOKENS")
        return cls(
            model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL_NAME),
            api_key=api_key,
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            max_tokens=int(max_tokens) if max_tokens else None,
            temperature=float(os.getenv("OPENAI_TEMPERATURE", "0")),
            top_p=float(os.getenv("OPENAI_TOP_P", "0.7")),
            timeout=float(os.getenv("OPENAI_TIMEOUT", "30")),
        )


def model_version_from_env() -> UITarsModelVersion:
    return UITarsModelVersion(os.getenv("UI_TARS_VERSION", UITarsModelVersion.V1_0.value))


def max_loop_count_from_env() -> int:
    return int(os.getenv("MAX_LOOP_COUNT", str(MAX_LOOP_COUNT)))
