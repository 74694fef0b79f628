#!/usr/bin/env python3
"""
请求结果
所有公开操作都返回 Outcome，而不是把异常抛给调用方
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class Outcome:
    """成功/失败结果"""
    success: bool
    message: str = ''
    data: Any = None

    @property
    def severity(self) -> str:
        return 'success' if self.success else 'error'

    @classmethod
    def ok(cls, data: Any = None, message: str = '') -> Outcome:
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, message: str) -> Outcome:
        return cls(success=False, message=message)
