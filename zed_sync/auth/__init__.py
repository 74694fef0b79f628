#!/usr/bin/env python3
"""
令牌模块
提供 ZED Champions API 令牌的解析、持久化与过期判断
"""

from .token_manager import TokenExpiry, TokenManager, format_remaining_time
from .token_store import MemoryTokenStore, TokenStore

__all__ = ['TokenManager', 'TokenExpiry', 'TokenStore', 'MemoryTokenStore', 'format_remaining_time']
