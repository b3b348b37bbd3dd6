"""sidecar-manager 环境变量配置管理。

环境变量:
    SIDECAR_HOME: 数据根目录
        - 默认 ~/.sidecar-manager
        - runtime/ 存放已安装版本，deployments/ 存放各部署的配置与日志

    SIDECAR_MANIFEST: 版本清单 JSON 路径
        - 未设置或文件不存在时使用内置默认清单（main 分支构建）

    SIDECAR_ENV_PREFIX: 传给运行时子进程的环境变量前缀
        - 默认 ZEROCLAW（即 ZEROCLAW_PROVIDER、ZEROCLAW_MODEL ...）

    SIDECAR_SOURCE_REPO: cargo install --git 使用的仓库地址

    SIDECAR_HEALTH_INTERVAL: 健康检查间隔（秒）
        - 默认 5.0，最小 2.0

    SIDECAR_HEALTH_TIMEOUT: 单次健康检查超时（秒）
        - 默认 2.5，最小 1.0

    SIDECAR_STOP_TIMEOUT: SIGTERM 之后等待退出的时间（秒）
        - 默认 4.0，超时后发送 SIGKILL

    SIDECAR_STATE_FILE: 状态快照 JSON 路径
        - 空/未设置 = 仅内存存储

    SIDECAR_HYDRATE: 启动时是否拉起 desired_state=running 的部署
        - true/1/yes = 拉起 (默认)

    SIDECAR_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "PROVIDER_KEY_ENV",
    "DEFAULT_SOURCE_REPO",
]

DEFAULT_SOURCE_REPO = "https://github.com/openagen/zeroclaw"
DEFAULT_ENV_PREFIX = "ZEROCLAW"

# 模型提供方 -> API key 环境变量名
PROVIDER_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, minimum: float, maximum: float) -> float:
    """解析浮点数环境变量，并限制在 [minimum, maximum] 范围内。"""
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return max(minimum, min(parsed, maximum))


def _parse_path(value: str | None) -> Path | None:
    """解析路径环境变量，展开 ~。"""
    if not value or not value.strip():
        return None
    return Path(value.strip()).expanduser()


def _parse_prefix(value: str | None) -> str:
    """解析子进程环境变量前缀，统一为大写且不带结尾下划线。"""
    if not value or not value.strip():
        return DEFAULT_ENV_PREFIX
    return value.strip().upper().rstrip("_") or DEFAULT_ENV_PREFIX


@dataclass
class Config:
    """sidecar-manager 配置。

    Attributes:
        home: 数据根目录
        manifest_path: 版本清单路径（None 表示使用内置默认）
        env_prefix: 子进程环境变量前缀
        source_repo: cargo 构建使用的 git 仓库
        health_interval: 健康检查间隔（秒）
        health_timeout: 健康检查超时（秒）
        stop_timeout: 优雅停止等待时间（秒）
        state_file: 状态快照路径（None 表示仅内存）
        hydrate: 启动时是否拉起期望运行的部署
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    home: Path = Path("~/.sidecar-manager").expanduser()
    manifest_path: Path | None = None
    env_prefix: str = DEFAULT_ENV_PREFIX
    source_repo: str = DEFAULT_SOURCE_REPO
    health_interval: float = 5.0
    health_timeout: float = 2.5
    stop_timeout: float = 4.0
    state_file: Path | None = None
    hydrate: bool = True
    log_debug: bool = False
    log_file: str | None = None

    @property
    def runtime_root(self) -> Path:
        """已安装运行时版本的根目录。"""
        return self.home / "runtime"

    @property
    def deployments_root(self) -> Path:
        """各部署文件的根目录。"""
        return self.home / "deployments"

    def env_name(self, suffix: str) -> str:
        """拼接子进程环境变量名，如 env_name("MODEL") -> ZEROCLAW_MODEL。"""
        return f"{self.env_prefix}_{suffix}"

    def __repr__(self) -> str:
        return (
            f"Config(home={self.home}, "
            f"manifest_path={self.manifest_path}, "
            f"env_prefix={self.env_prefix}, "
            f"health_interval={self.health_interval}, "
            f"health_timeout={self.health_timeout}, "
            f"stop_timeout={self.stop_timeout}, "
            f"state_file={self.state_file}, "
            f"hydrate={self.hydrate}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "sidecar-manager"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"sidecar_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("SIDECAR_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        home=_parse_path(os.environ.get("SIDECAR_HOME")) or Path("~/.sidecar-manager").expanduser(),
        manifest_path=_parse_path(os.environ.get("SIDECAR_MANIFEST")),
        env_prefix=_parse_prefix(os.environ.get("SIDECAR_ENV_PREFIX")),
        source_repo=(os.environ.get("SIDECAR_SOURCE_REPO") or "").strip() or DEFAULT_SOURCE_REPO,
        health_interval=_parse_float(
            os.environ.get("SIDECAR_HEALTH_INTERVAL"), 5.0, 2.0, 3600.0
        ),
        health_timeout=_parse_float(
            os.environ.get("SIDECAR_HEALTH_TIMEOUT"), 2.5, 1.0, 60.0
        ),
        stop_timeout=_parse_float(
            os.environ.get("SIDECAR_STOP_TIMEOUT"), 4.0, 0.1, 60.0
        ),
        state_file=_parse_path(os.environ.get("SIDECAR_STATE_FILE")),
        hydrate=_parse_bool(os.environ.get("SIDECAR_HYDRATE"), default=True),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
