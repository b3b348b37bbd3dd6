"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from aiohttp import web

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 测试替身脚本目录
FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_RUNTIME = FIXTURES_DIR / "fake_runtime.py"

from sidecar_manager.config import Config  # noqa: E402
from sidecar_manager.models import DeploymentState  # noqa: E402
from sidecar_manager.store import InMemoryRuntimeStore  # noqa: E402


def write_fake_binary(path: Path, *args: str) -> Path:
    """写一个调用 fake_runtime.py 的可执行 shell 脚本。

    Args:
        path: 目标路径
        *args: 追加到 fake_runtime.py 的参数

    Returns:
        脚本路径
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    extra = " ".join(args)
    path.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_RUNTIME}" {extra} "$@"\n',
        encoding="utf-8",
    )
    path.chmod(0o755)
    return path


def sha256_of(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def store() -> InMemoryRuntimeStore:
    """空的内存存储。"""
    return InMemoryRuntimeStore()


@pytest.fixture
def sidecar_config(tmp_path: Path) -> Config:
    """指向临时目录、使用短超时的配置。"""
    return Config(
        home=tmp_path / "home",
        health_interval=2.0,
        health_timeout=1.0,
        stop_timeout=2.0,
    )


@pytest.fixture
def make_deployment(tmp_path: Path):
    """构造部署记录的工厂。"""

    def _make(**overrides) -> DeploymentState:
        workspace = tmp_path / "workspace"
        workspace.mkdir(exist_ok=True)
        fields = {
            "name": "assistant",
            "runtime_version": "main",
            "workspace_path": str(workspace),
            "model_provider": "anthropic",
            "model_name": "claude-test",
            "gateway_port": 18080,
            "api_base_url": "http://127.0.0.1:18080",
        }
        fields.update(overrides)
        return DeploymentState(**fields)

    return _make


@contextlib.asynccontextmanager
async def serve_app(app: web.Application) -> AsyncIterator[str]:
    """在 127.0.0.1 的随机端口上运行 aiohttp 应用，返回 base URL。"""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        yield f"http://{host}:{port}"
    finally:
        await runner.cleanup()


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    """轮询直到 predicate() 为真或超时。"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return bool(predicate())
