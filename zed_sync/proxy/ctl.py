#!/usr/bin/env python3
"""
开发代理进程管理
uvicorn 以 factory 方式加载 proxy.server:create_app，PID 写入 run 目录
"""
import os
import sys
import time
from pathlib import Path
from typing import Optional

import psutil

from ..config.config_manager import ConfigManager, Settings
from ..utils.platform_helper import create_detached_process

STARTUP_GRACE_SECONDS = 1
STOP_TIMEOUT_SECONDS = 5


class ProxyController:
    """后台开发代理的 start/stop/restart/status"""

    def __init__(self, settings: Settings, run_dir: Optional[Path] = None):
        self.settings = settings
        self.port = settings.proxy_port
        self.run_dir = run_dir or Path.home() / '.zed_sync' / 'run'
        self.pid_file = self.run_dir / 'proxy.pid'
        self.log_file = self.run_dir / 'proxy.log'

    def get_pid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def _live_process(self) -> Optional[psutil.Process]:
        """PID 文件指向的存活进程，僵尸进程视为不存在"""
        pid = self.get_pid()
        if not pid:
            return None
        try:
            process = psutil.Process(pid)
            if process.is_running() and process.status() != psutil.STATUS_ZOMBIE:
                return process
        except psutil.NoSuchProcess:
            pass
        return None

    def is_running(self) -> bool:
        return self._live_process() is not None

    def build_command(self) -> list:
        host = os.getenv('ZED_SYNC_PROXY_HOST', '127.0.0.1')
        return [
            sys.executable, '-m', 'uvicorn',
            'zed_sync.proxy.server:create_app',
            '--factory',
            '--host', host,
            '--port', str(self.port),
        ]

    def start(self) -> bool:
        if self.is_running():
            print(f"代理已在运行 (PID: {self.get_pid()})")
            return False

        self.run_dir.mkdir(parents=True, exist_ok=True)
        config_file = ConfigManager().ensure_config_file()
        if not os.getenv('ZED_TOKEN'):
            print("提示: 未设置 ZED_TOKEN，代理将转发浏览器自带的 Authorization 头")

        with open(self.log_file, 'a') as log_handle:
            process = create_detached_process(
                self.build_command(),
                log_handle,
                cwd=str(Path(__file__).resolve().parents[2]),
                env=os.environ.copy(),
            )
        self.pid_file.write_text(str(process.pid))

        time.sleep(STARTUP_GRACE_SECONDS)
        if not self.is_running():
            print(f"代理启动失败，日志: {self.log_file}")
            return False
        print(f"代理已启动: http://127.0.0.1:{self.port}/zed -> {self.settings.api_base} (配置: {config_file})")
        return True

    def stop(self) -> bool:
        process = self._live_process()
        if process is None:
            print("代理服务未运行")
            self.pid_file.unlink(missing_ok=True)
            return False

        try:
            process.terminate()
            process.wait(timeout=STOP_TIMEOUT_SECONDS)
        except psutil.TimeoutExpired:
            process.kill()
        except psutil.NoSuchProcess:
            pass

        self.pid_file.unlink(missing_ok=True)
        print("代理服务已停止")
        return True

    def restart(self) -> bool:
        self.stop()
        time.sleep(STARTUP_GRACE_SECONDS)
        return self.start()

    def status(self):
        process = self._live_process()
        if process is None:
            print("代理服务: 未运行")
            return
        print(f"代理服务: 运行中 (PID: {process.pid}, 端口: {self.port}, 上游: {self.settings.api_base})")
