#!/usr/bin/env python3
"""
令牌持久化存储
以 JSON 文件保存若干字符串键值（默认 ~/.zed_sync/storage.json）
"""

import json
from pathlib import Path
from typing import Dict, Optional, Tuple

TOKEN_KEY = 'zed_auth_token'
TOKEN_EXPIRY_KEY = 'zed_auth_token_expiry'


class TokenStore:
    """基于文件的键值存储"""

    def __init__(self, storage_file: Optional[Path] = None):
        """
        初始化存储

        Args:
            storage_file: 存储文件路径，默认为 ~/.zed_sync/storage.json
        """
        self.storage_file = Path(storage_file) if storage_file else Path.home() / '.zed_sync' / 'storage.json'

        # 文件签名缓存（用于检测外部修改）
        self._file_signature: Tuple[int, int] = (0, 0)
        self._cached_data: Optional[Dict[str, str]] = None

    def _get_file_signature(self) -> Tuple[int, int]:
        """获取文件签名（mtime_ns, size）"""
        try:
            stat = self.storage_file.stat()
            return (stat.st_mtime_ns, stat.st_size)
        except OSError:
            return (0, 0)

    def _load(self) -> Dict[str, str]:
        """读取存储内容，文件未变化时直接使用缓存"""
        current_signature = self._get_file_signature()
        if self._cached_data is not None and current_signature == self._file_signature:
            return self._cached_data

        data: Dict[str, str] = {}
        if self.storage_file.exists():
            try:
                with open(self.storage_file, 'r', encoding='utf-8') as f:
                    raw = json.load(f)
                if isinstance(raw, dict):
                    # 只保留字符串条目
                    data = {k: v for k, v in raw.items() if isinstance(v, str)}
            except (json.JSONDecodeError, OSError) as e:
                print(f"加载令牌存储失败: {e}")

        self._cached_data = data
        self._file_signature = current_signature
        return data

    def _save(self, data: Dict[str, str]):
        """整体写回文件"""
        self.storage_file.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.storage_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)

            self._cached_data = data
            self._file_signature = self._get_file_signature()
        except OSError as e:
            print(f"保存令牌存储失败: {e}")
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_many(self, entries: Dict[str, str]):
        """一次写入多个条目"""
        data = dict(self._load())
        data.update(entries)
        self._save(data)

    def remove(self, *keys: str):
        """删除条目，不存在的键直接忽略"""
        data = dict(self._load())
        removed = False
        for key in keys:
            if key in data:
                del data[key]
                removed = True
        if removed:
            self._save(data)


class MemoryTokenStore:
    """内存存储，接口与 TokenStore 一致（测试与嵌入使用）"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_many(self, entries: Dict[str, str]):
        self._data.update(entries)

    def remove(self, *keys: str):
        for key in keys:
            self._data.pop(key, None)
