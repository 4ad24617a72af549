"""
图片工具模块 - 图片数据 MIME 探测和 data URI 转换。
"""

import base64
import logging
from io import BytesIO
from typing import Union

from PIL import Image, UnidentifiedImageError

__all__ = [
    "DEFAULT_IMAGE_MIME",
    "DATA_URI_PREFIX",
    "is_data_uri",
    "sniff_mime",
    "to_data_uri",
]

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MIME = "image/jpeg"
DATA_URI_PREFIX = "data:image/"


def is_data_uri(value: object) -> bool:
    return isinstance(value, str) and value.startswith(DATA_URI_PREFIX)


def sniff_mime(data: Union[bytes, bytearray]) -> str:
    """
    使用 Pillow 识别图片格式，失败时返回 image/jpeg。
    """
    if not data:
        return DEFAULT_IMAGE_MIME
    try:
        with Image.open(BytesIO(bytes(data))) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("图片格式识别失败：%s", exc)
        return DEFAULT_IMAGE_MIME
    if not fmt:
        return DEFAULT_IMAGE_MIME
    return Image.MIME.get(fmt.upper(), DEFAULT_IMAGE_MIME)


def to_data_uri(data: Union[bytes, bytearray]) -> str:
    """将图片二进制数据编码为 base64 data URI。"""
    mime = sniff_mime(data)
    encoded = base64.b64encode(bytes(data)).decode("ascii")
    return f"data:{mime};base64,{encoded}"
