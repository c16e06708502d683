"""规划模块：调用视觉语言模型决策下一步动作"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncOpenAI

from .action_parser import action_parser
from .config import ModelConfig
from .constants import DEFAULT_FACTORS, MAX_PIXELS_BY_VERSION, MAX_PIXELS_V1_0
from .memory import convert_to_openai_messages
from .models import Factors, InvokeOutput, InvokeParams, UITarsModelVersion
from .perception import Perception
from .retry import EmptyModelResponseError, run_cancellable


def _now_ms() -> int:
    return int(time.time() * 1000)


class Planner:
    """
    规划模块：把对话与截图转换为一次模型调用，并解析模型输出的动作。

    每次 invoke 只发起一次网络请求，重试由调用方决定；调用之间不保留状态。
    """

    def __init__(
        self,
        config: ModelConfig,
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        # SDK 自带的重试关闭，由控制循环的重试策略负责
        self.client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            max_retries=0,
            timeout=config.timeout,
        )
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.perception = Perception(self.logger)

    @property
    def factors(self) -> Factors:
        """模型坐标空间 [宽, 高]"""
        return DEFAULT_FACTORS

    @property
    def model_name(self) -> str:
        return self.config.model or "unknown"

    def _completion_kwargs(self, version: UITarsModelVersion, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        max_tokens = self.config.max_tokens
        if max_tokens is None:
            max_tokens = 65535 if version == UITarsModelVersion.V1_5 else 1000
        return {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
            "max_tokens": max_tokens,
            "temperature": self.config.temperature,
            "top_p": self.config.top_p,
        }

    async def _invoke_model_provider(
        self,
        version: UITarsModelVersion,
        messages: List[Dict[str, Any]],
        signal: Optional[asyncio.Event] = None,
    ) -> Tuple[str, int, int]:
        """调用 chat completion，返回 (预测文本, 耗时毫秒, token 数)"""
        start_time = _now_ms()
        response = await run_cancellable(
            self.client.chat.completions.create(**self._completion_kwargs(version, messages)),
            signal,
        )

        prediction = ""
        if response.choices:
            prediction = response.choices[0].message.content or ""
        cost_tokens = response.usage.total_tokens if response.usage else 0
        return prediction, _now_ms() - start_time, cost_tokens

    async def invoke(self, params: InvokeParams, signal: Optional[asyncio.Event] = None) -> InvokeOutput:
        """
        压缩截图、构造消息并调用模型，返回原始预测与解析后的动作。

        模型返回空文本时抛出 EmptyModelResponseError；动作解析失败不会抛出，
        只返回空的动作列表。
        """
        self.logger.info(
            f"invoke: screen_context={params.screen_context}, "
            f"scale_factor={params.scale_factor}, version={params.ui_tars_version.value}"
        )

        max_pixels = MAX_PIXELS_BY_VERSION.get(params.ui_tars_version, MAX_PIXELS_V1_0)
        compressed_images = self.perception.compress_all(params.images, max_pixels)
        messages = convert_to_openai_messages(params.conversations, compressed_images)

        start_time = _now_ms()
        try:
            prediction, cost_time, cost_tokens = await self._invoke_model_provider(
                params.ui_tars_version, messages, signal
            )
        except Exception as e:
            self.logger.error(f"❌ 模型调用失败: {e}")
            raise
        finally:
            self.logger.info(f"模型耗时: {_now_ms() - start_time}ms")

        if not prediction:
            self.logger.error("❌ 模型返回为空")
            raise EmptyModelResponseError("vlm response error: empty prediction")

        try:
            parsed_actions = action_parser(
                prediction,
                self.factors,
                screen_context=params.screen_context,
                scale_factor=params.scale_factor,
                model_version=params.ui_tars_version,
            )
        except Exception as e:
            self.logger.error(f"❌ 动作解析失败: {e}, 原始输出: {prediction}")
            parsed_actions = []

        return InvokeOutput(
            prediction=prediction,
            parsed_actions=parsed_actions,
            cost_time=cost_time,
            cost_tokens=cost_tokens,
        )
