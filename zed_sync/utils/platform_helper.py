#!/usr/bin/env python3
"""
跨平台进程工具
"""
import os
import subprocess
from typing import IO, Dict, List, Optional


def create_detached_process(
    cmd: List[str],
    log_handle: IO,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.Popen:
    """
    在独立进程组中启动子进程，父进程退出或收到 Ctrl+C 不会影响它

    Args:
        cmd: 命令及参数
        log_handle: stdout/stderr 输出的文件句柄
        cwd: 工作目录
        env: 环境变量

    Returns:
        Popen 对象
    """
    kwargs = {
        'cwd': cwd,
        'env': env,
        'stdout': log_handle,
        'stderr': log_handle,
        'stdin': subprocess.DEVNULL,
    }
    if os.name == 'nt':
        kwargs['creationflags'] = (
            subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
        )
    else:
        kwargs['start_new_session'] = True
    return subprocess.Popen(cmd, **kwargs)
