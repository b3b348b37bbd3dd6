"""sidecar-manager 异常类。

安装、部署与流式请求三类错误的统一基类。验证类失败（校验和、缺失二进制）
不抛异常，而是以 ActionResult 返回。
"""

from __future__ import annotations

__all__ = [
    "SidecarError",
    "ConfigError",
    "ManifestError",
    "InstallError",
    "ChecksumMismatchError",
    "DeploymentNotFoundError",
    "ProcessSpawnError",
    "RequestAbortedError",
]


class SidecarError(Exception):
    """sidecar-manager 基础异常。"""
    pass


class ConfigError(SidecarError):
    """配置错误（如目录不可写）。"""
    pass


class InstallError(SidecarError):
    """安装失败（构建、下载、解压或提升失败）。"""
    pass


class ManifestError(InstallError):
    """版本清单中找不到可安装的条目。

    Attributes:
        version: 请求的版本
        platform: 当前平台标识
    """

    def __init__(self, version: str, platform: str) -> None:
        self.version = version
        self.platform = platform
        super().__init__(
            f'No installable runtime asset for version "{version}" on {platform}.'
        )


class ChecksumMismatchError(InstallError):
    """下载的源码包校验和不匹配。

    Attributes:
        expected: 清单中记录的 SHA-256
        actual: 实际计算出的 SHA-256
    """

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Archive checksum mismatch. Expected {expected}, got {actual}.")


class DeploymentNotFoundError(SidecarError):
    """部署不存在。

    Attributes:
        deployment_id: 部署 ID
    """

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class ProcessSpawnError(SidecarError):
    """运行时进程启动失败。"""
    pass


class RequestAbortedError(SidecarError):
    """流式请求被调用方取消。"""

    def __init__(self, message: str = "request aborted") -> None:
        super().__init__(message)
