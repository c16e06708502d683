"""感知模块：校验截图并压缩送入模型的图片"""

import base64
import binascii
import io
import logging
import math
import re
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from .models import ScreenshotContext, ScreenshotOutput

_BASE64_PREFIX_RE = re.compile(r"^data:image/\w+;base64,")


def replace_base64_prefix(image_base64: str) -> str:
    """去掉 data URL 前缀，只保留 base64 数据"""
    return _BASE64_PREFIX_RE.sub("", image_base64)


class Perception:
    """
    感知模块：负责截图的解码校验与图片压缩。
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    def _open(self, image_base64: str) -> Image.Image:
        raw = base64.b64decode(replace_base64_prefix(image_base64), validate=False)
        image = Image.open(io.BytesIO(raw))
        image.load()
        return image

    def inspect(self, snapshot: Optional[ScreenshotOutput]) -> Optional[ScreenshotContext]:
        """
        解码截图，返回尺寸信息；截图为空或无法解码时返回 None。
        """
        if snapshot is None or not snapshot.base64:
            self.logger.error("❌ 截图为空")
            return None

        try:
            image = self._open(snapshot.base64)
        except (binascii.Error, UnidentifiedImageError, OSError, ValueError) as e:
            self.logger.error(f"❌ 截图解码失败: {e}")
            return None

        width, height = image.size
        if not width or not height:
            self.logger.error(f"❌ 截图尺寸无效: {width}x{height}")
            return None

        return ScreenshotContext(
            width=width,
            height=height,
            scale_factor=snapshot.scale_factor or 1,
            mime=Image.MIME.get(image.format or "", "image/png"),
        )

    def resize(self, image_base64: str, max_pixels: int) -> str:
        """
        超过像素预算时等比缩小，统一输出 PNG 的 base64。

        相同输入与预算得到相同输出。
        """
        image = self._open(image_base64)
        width, height = image.size

        current_pixels = width * height
        if current_pixels > max_pixels:
            resize_factor = math.sqrt(max_pixels / current_pixels)
            new_size = (math.floor(width * resize_factor), math.floor(height * resize_factor))
            image = image.resize(new_size, Image.Resampling.BICUBIC)
            self.logger.debug(f"图片压缩 {width}x{height} -> {new_size[0]}x{new_size[1]}")

        if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            image = image.convert("RGB")

        buffer = io.BytesIO()
        image.save(buffer, format="PNG", optimize=True)
        return base64.b64encode(buffer.getvalue()).decode("utf-8")

    def compress_all(self, images: List[str], max_pixels: int) -> List[str]:
        return [self.resize(image, max_pixels) for image in images]
