"""sidecar-manager - 本地运行时（sidecar）生命周期管理。

环境变量:
    SIDECAR_HOME: 数据根目录（默认 ~/.sidecar-manager）
    SIDECAR_STATE_FILE: 状态快照路径（空 = 仅内存）
    SIDECAR_LOG_DEBUG: 调试日志输出到临时文件

用法:
    sidecar-manager
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
