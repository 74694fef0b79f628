#!/usr/bin/env python3
"""
Token 格式解析
解析 ZED Champions 签发的 JWT 结构令牌，提取过期时间
"""

import base64
import binascii
import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

BEARER_PREFIX = "bearer "

# header.payload.signature 每段都只能是 base64url 字符
SEGMENT_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def strip_scheme(raw: str) -> str:
    """
    去掉首尾空白以及 "Bearer " 前缀

    用户通常直接粘贴整段 Authorization 头的值

    Example:
        >>> strip_scheme("  Bearer abc.def.ghi ")
        'abc.def.ghi'
    """
    if not raw or not isinstance(raw, str):
        return ""

    token = raw.strip()
    if token[:len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        token = token[len(BEARER_PREFIX):].strip()
    return token


def split_token(token: str) -> Optional[List[str]]:
    """拆分为 header.payload.signature 三段，格式不对返回 None"""
    if not token or not isinstance(token, str):
        return None

    parts = token.split('.')
    if len(parts) != 3:
        return None
    if not all(SEGMENT_PATTERN.fullmatch(part) for part in parts):
        return None
    return parts


def _b64url_decode(segment: str) -> bytes:
    # JWT 省略了 base64 填充
    padded = segment + '=' * (-len(segment) % 4)
    return base64.b64decode(padded, altchars=b'-_', validate=True)


def decode_claims(token: str) -> Optional[Dict[str, Any]]:
    """
    解码中间段的 claims

    Args:
        token: 已去掉前缀的 token

    Returns:
        claims 字典，无法解码时返回 None
    """
    parts = split_token(token)
    if parts is None:
        return None

    try:
        payload = json.loads(_b64url_decode(parts[1]).decode('utf-8'))
    except (binascii.Error, ValueError) as e:
        # UnicodeDecodeError 与 JSONDecodeError 都是 ValueError
        print(f"解析 token 载荷失败: {e}")
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def extract_expiry(claims: Optional[Dict[str, Any]]) -> Optional[datetime]:
    """从 exp（秒级时间戳）得到 UTC 过期时间"""
    if not claims:
        return None

    exp = claims.get('exp')
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    if not math.isfinite(exp):
        return None

    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
