"""部署文件布局。

每个部署在 <SIDECAR_HOME>/deployments/<id>/ 下拥有:
    config.json      部署摘要 + 策略 + 有效能力集（供运行时读取）
    runtime.env      非敏感环境变量（KEY=value，每行一条）
    logs/runtime.log 进程输出审计日志
    home/            子进程的 HOME 目录
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from .models import CapabilityPolicy, DeploymentState, EffectiveCapabilitySet

__all__ = ["DeploymentLayout"]


def _env_line(key: str, value: str) -> str:
    if any(ch in value for ch in (" ", "\n", "\"", "#", "'")):
        value = json.dumps(value)
    return f"{key}={value}"


@dataclass(frozen=True)
class DeploymentLayout:
    """单个部署的文件路径集合。"""

    root: Path

    @classmethod
    def for_deployment(cls, deployments_root: Path, deployment_id: str) -> DeploymentLayout:
        return cls(root=deployments_root / deployment_id)

    @property
    def config_path(self) -> Path:
        return self.root / "config.json"

    @property
    def env_path(self) -> Path:
        return self.root / "runtime.env"

    @property
    def log_path(self) -> Path:
        return self.root / "logs" / "runtime.log"

    @property
    def home_dir(self) -> Path:
        return self.root / "home"

    def write(
        self,
        deployment: DeploymentState,
        policy: CapabilityPolicy,
        effective: EffectiveCapabilitySet,
        env: dict[str, str] | None = None,
    ) -> DeploymentLayout:
        """创建目录并写入 config.json 与 runtime.env。

        Args:
            deployment: 部署快照
            policy: 已规范化的策略
            effective: 有效能力集
            env: 额外写入 env 文件的变量（不应包含密钥）

        Returns:
            self，便于链式调用
        """
        self.home_dir.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        config = {
            "deployment": {
                "id": deployment.id,
                "name": deployment.name,
                "runtimeVersion": deployment.runtime_version,
                "workspacePath": deployment.workspace_path,
                "modelProvider": deployment.model_provider,
                "modelName": deployment.model_name,
                "gateway": {
                    "host": deployment.gateway_host,
                    "port": deployment.gateway_port,
                },
                "apiBaseUrl": deployment.api_base_url,
            },
            "policy": policy.model_dump(mode="json"),
            "capabilities": effective.model_dump(mode="json"),
        }
        self._write_text(self.config_path, json.dumps(config, ensure_ascii=False, indent=2))

        merged_env = {**deployment.env, **(env or {})}
        lines = [_env_line(key, value) for key, value in sorted(merged_env.items())]
        self._write_text(self.env_path, "\n".join(lines) + ("\n" if lines else ""))
        return self

    @staticmethod
    def _write_text(path: Path, content: str) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
