#!/usr/bin/env python3
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_API_BASE = 'https://api.zedchampions.com'
DEFAULT_PROXY_BASE = 'http://localhost:3000/zed'
DEFAULT_TIMEOUT = 15.0
DEFAULT_PROXY_PORT = 3000

# 环境变量 -> 配置键
ENV_OVERRIDES = {
    'ZED_SYNC_API_BASE': 'api_base',
    'ZED_SYNC_PROXY_BASE': 'proxy_base',
    'ZED_SYNC_USE_PROXY': 'use_proxy',
    'ZED_SYNC_TIMEOUT': 'timeout',
    'ZED_SYNC_PROXY_PORT': 'proxy_port',
    'ZED_SYNC_STORAGE_FILE': 'storage_file',
}


def _as_bool(value: Any) -> bool:
    """宽松解析布尔值"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {'1', 'true', 'yes', 'on'}
    if isinstance(value, (int, float)):
        return bool(value)
    return bool(value)


def _as_float(value: Any, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if result > 0 else default


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Settings:
    """启动时解析一次的运行配置"""
    api_base: str = DEFAULT_API_BASE
    proxy_base: str = DEFAULT_PROXY_BASE
    use_proxy: bool = False
    timeout: float = DEFAULT_TIMEOUT
    proxy_port: int = DEFAULT_PROXY_PORT
    storage_file: Optional[Path] = None


class ConfigManager:
    """统一配置管理器"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.config_dir = config_dir or Path.home() / '.zed_sync'
        self.config_file = self.config_dir / 'config.json'

    def _ensure_config_dir(self):
        """确保配置目录存在"""
        self.config_dir.mkdir(parents=True, exist_ok=True)

    def ensure_config_file(self) -> Path:
        """确保配置文件存在，不存在时写入默认值"""
        self._ensure_config_dir()
        if not self.config_file.exists():
            defaults = Settings()
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump({
                    'api_base': defaults.api_base,
                    'proxy_base': defaults.proxy_base,
                    'use_proxy': defaults.use_proxy,
                    'timeout': defaults.timeout,
                    'proxy_port': defaults.proxy_port,
                }, f, ensure_ascii=False, indent=2)
        return self.config_file

    def _load_file(self) -> Dict[str, Any]:
        """读取配置文件，文件缺失或损坏时返回空配置"""
        if not self.config_file.exists():
            return {}

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            print(f"配置文件加载失败: {e}")
            return {}

        if not isinstance(data, dict):
            print(f"配置文件格式错误: {self.config_file}")
            return {}
        return data

    def load(self, environ: Optional[Dict[str, str]] = None) -> Settings:
        """
        合并配置文件与环境变量，得到 Settings

        Args:
            environ: 环境变量字典，默认 os.environ

        Returns:
            Settings 实例
        """
        environ = os.environ if environ is None else environ
        raw = self._load_file()

        for env_name, key in ENV_OVERRIDES.items():
            value = environ.get(env_name)
            if value is not None and value.strip():
                raw[key] = value.strip()

        storage_file = raw.get('storage_file')
        return Settings(
            api_base=str(raw.get('api_base') or DEFAULT_API_BASE).rstrip('/'),
            proxy_base=str(raw.get('proxy_base') or DEFAULT_PROXY_BASE).rstrip('/'),
            use_proxy=_as_bool(raw.get('use_proxy', False)),
            timeout=_as_float(raw.get('timeout'), DEFAULT_TIMEOUT),
            proxy_port=_as_int(raw.get('proxy_port'), DEFAULT_PROXY_PORT),
            storage_file=Path(storage_file).expanduser() if storage_file else None,
        )


def load_settings(environ: Optional[Dict[str, str]] = None) -> Settings:
    """按默认位置加载配置"""
    return ConfigManager().load(environ)
