"""sidecar-manager 应用入口。

包含组合根（build_manager）、守护进程生命周期管理和主入口点。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

from .config import Config, get_config
from .errors import ConfigError
from .install import Installer
from .manager import Manager
from .registry import CapabilityRegistry, StaticCapabilityRegistry
from .signal_manager import SignalManager
from .store import InMemoryRuntimeStore, JsonFileRuntimeStore, RuntimeStore

__all__ = ["build_manager", "run_daemon", "main"]

logger = logging.getLogger(__name__)


def build_manager(
    config: Config,
    *,
    store: RuntimeStore | None = None,
    registry: CapabilityRegistry | None = None,
) -> Manager:
    """按配置组装 Manager。

    Args:
        config: 配置
        store: 存储（默认 SIDECAR_STATE_FILE 设置时使用 JSON 快照，否则内存）
        registry: 能力注册表（默认空的静态注册表）

    Raises:
        ConfigError: 数据根目录无法创建
    """
    try:
        config.home.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create sidecar home {config.home}: {e}") from e

    if store is None:
        if config.state_file is not None:
            store = JsonFileRuntimeStore(config.state_file)
        else:
            store = InMemoryRuntimeStore()

    installer = Installer(
        store,
        config.runtime_root,
        manifest_path=config.manifest_path,
        source_repo=config.source_repo,
    )
    return Manager(
        store,
        registry or StaticCapabilityRegistry(),
        installer,
        config=config,
    )


async def run_daemon(manager: Manager | None = None) -> None:
    """运行守护进程。

    启动时按配置拉起 desired_state=running 的部署，随后等待 SIGINT/SIGTERM；
    退出前停止所有部署进程。
    """
    config = get_config()
    logger.info(f"Starting sidecar manager: {config}")

    manager = manager or build_manager(config)
    signal_manager = SignalManager()

    try:
        await signal_manager.start()

        if config.hydrate:
            await manager.hydrate()
            logger.info(f"Hydrated {len(manager.supervisor.get_handles())} deployment(s)")

        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown signal received, stopping deployments...")

    except asyncio.CancelledError:
        logger.info("run_daemon: asyncio.CancelledError caught")
        raise

    except BaseException as e:
        logger.error(
            f"run_daemon: BaseException caught: type={type(e).__name__}, "
            f"msg={e}"
        )
        raise

    finally:
        logger.info("run_daemon: entering finally block")

        if not signal_manager.is_force_exit:
            with contextlib.suppress(asyncio.CancelledError):
                await manager.shutdown()

        await signal_manager.stop()
        logger.info("run_daemon: cleanup completed")

        if signal_manager.is_force_exit:
            logger.warning("Force exit requested, terminating with exit code 130")
            sys.exit(130)  # 128 + SIGINT(2) = 130


def main() -> None:
    """主入口点。"""
    config = get_config()

    log_handlers: list[logging.Handler] = []
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 第三方库保持 WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("sidecar_manager").setLevel(log_level)

    asyncio.run(run_daemon())


if __name__ == "__main__":
    main()
