"""信号管理模块。

将 OS 信号转换为守护进程的关闭流程：
- SIGINT / SIGTERM: 优雅退出（停止所有部署进程 + 清理 + 退出）
- 在 double_tap_window 内再次收到 SIGINT: 强制退出（退出码 130）

管理器本身不直接响应信号；run_daemon() 等待 wait_for_shutdown() 返回后
执行 Manager.shutdown()。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)

DEFAULT_DOUBLE_TAP_WINDOW = 1.0


class SignalManager:
    """信号管理器。

    Example:
        ```python
        signal_manager = SignalManager()

        async def main():
            await signal_manager.start()
            try:
                await signal_manager.wait_for_shutdown()
            finally:
                await manager.shutdown()
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        double_tap_window: 双击 SIGINT 强制退出的窗口时间（秒）
    """

    def __init__(
        self,
        double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            double_tap_window: 双击退出窗口时间
            on_shutdown: 关闭时的回调函数
        """
        self.double_tap_window = double_tap_window
        self._on_shutdown = on_shutdown

        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler: Optional[signal.Handlers] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 只能通过 signal.signal() 处理 SIGINT
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._handle_sigint(),
            )
            logger.debug("SIGINT handler installed on Windows")

    async def stop(self) -> None:
        """停止信号监听并恢复原始处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except Exception as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except Exception as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def _handle_sigint(self) -> None:
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if self._shutdown_requested and time_since_last < self.double_tap_window:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_exit = True
            self._request_shutdown()
            return

        logger.info(
            f"SIGINT received, stopping deployments. "
            f"Press Ctrl+C again within {self.double_tap_window}s to force exit."
        )
        self._request_shutdown()

    def _handle_sigterm(self) -> None:
        logger.info("SIGTERM received, initiating graceful shutdown")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        self._request_shutdown()
