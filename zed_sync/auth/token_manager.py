#!/usr/bin/env python3
"""
令牌管理器
负责 ZED Champions API 令牌的解析、校验、持久化与过期判断

状态流转：
    无令牌 --set_token 成功--> 有效 --时间推移--> 已过期
    任意状态 --clear_token--> 无令牌
    任意状态 --set_token 成功--> 有效（覆盖旧令牌）

过期时间始终从当前保存的令牌重新解析，持久化的过期时间字段
仅供外部读取，不作为判断依据。
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .token_format import decode_claims, extract_expiry, strip_scheme
from .token_store import TOKEN_EXPIRY_KEY, TOKEN_KEY, TokenStore

# 提前 5 分钟视为过期，避免请求途中令牌失效
EXPIRY_BUFFER_SECONDS = 5 * 60

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE


@dataclass
class TokenExpiry:
    """令牌过期信息"""
    date: datetime
    remaining: int  # 距离过期的毫秒数，不小于 0
    expired: bool


def format_remaining_time(remaining: float) -> str:
    """
    把剩余毫秒数格式化为可读文本

    Example:
        >>> format_remaining_time(90 * 60 * 1000)
        '1h 30m'
        >>> format_remaining_time(5 * 60 * 1000)
        '5m'
        >>> format_remaining_time(0)
        'Expired'
    """
    if remaining <= 0:
        return "Expired"

    hours = int(remaining // MS_PER_HOUR)
    minutes = int((remaining % MS_PER_HOUR) // MS_PER_MINUTE)
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


class TokenManager:
    """令牌管理器"""

    def __init__(self, store=None, clock: Callable[[], float] = time.time):
        """
        初始化令牌管理器

        Args:
            store: 键值存储，需提供 get/set_many/remove，默认 TokenStore()
            clock: 返回当前时间戳（秒）的函数，测试时可替换
        """
        self.store = store if store is not None else TokenStore()
        self.clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _current_expiry(self) -> Optional[datetime]:
        token = self.get_token()
        if not token:
            return None
        return extract_expiry(decode_claims(token))

    def set_token(self, raw: str) -> bool:
        """
        校验并保存令牌

        Args:
            raw: 令牌字符串，可带 "Bearer " 前缀

        Returns:
            True 如果保存成功；格式错误或缺少 exp 时返回 False，且不修改已有状态
        """
        token = strip_scheme(raw)
        if not token:
            return False

        expiry = extract_expiry(decode_claims(token))
        if expiry is None:
            print("令牌格式无效或缺少过期时间")
            return False

        # 令牌与过期时间同时写入
        self.store.set_many({
            TOKEN_KEY: token,
            TOKEN_EXPIRY_KEY: expiry.isoformat().replace('+00:00', 'Z'),
        })
        return True

    def get_token(self) -> Optional[str]:
        """读取已保存的令牌"""
        return self.store.get(TOKEN_KEY) or None

    def is_token_expired(self) -> bool:
        """没有令牌、令牌无法解析或距离过期不足 5 分钟时返回 True"""
        expiry = self._current_expiry()
        if expiry is None:
            return True
        return self._now() >= expiry - timedelta(seconds=EXPIRY_BUFFER_SECONDS)

    def get_token_expiry(self) -> Optional[TokenExpiry]:
        """
        获取令牌过期详情

        Returns:
            TokenExpiry；没有令牌或令牌无法解析时返回 None
        """
        expiry = self._current_expiry()
        if expiry is None:
            return None

        remaining = (expiry - self._now()) / timedelta(milliseconds=1)
        return TokenExpiry(
            date=expiry,
            remaining=max(0, int(remaining)),
            expired=self.is_token_expired(),
        )

    format_remaining_time = staticmethod(format_remaining_time)

    def clear_token(self):
        """清除令牌及过期时间"""
        self.store.remove(TOKEN_KEY, TOKEN_EXPIRY_KEY)
