"""持久化存储接口。

sidecar-manager 只通过该接口读写安装记录、部署、运行时事件和策略绑定；
具体存储引擎由组合根注入。
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ..models import (
    CapabilityPolicy,
    DeploymentState,
    EventPage,
    Installation,
    RuntimeEvent,
)

__all__ = ["RuntimeStore", "MAX_EVENT_PAGE", "DEFAULT_EVENT_PAGE", "clamp_limit"]

DEFAULT_EVENT_PAGE = 100
MAX_EVENT_PAGE = 500


def clamp_limit(limit: int | None) -> int:
    """事件分页大小限制在 [1, 500]，未指定时为 100。"""
    return max(1, min(MAX_EVENT_PAGE, limit or DEFAULT_EVENT_PAGE))


@runtime_checkable
class RuntimeStore(Protocol):
    """存储 CRUD 契约。"""

    # 安装记录
    def list_installations(self) -> list[Installation]: ...

    def get_installation(self, version: str) -> Installation | None: ...

    def get_active_installation(self) -> Installation | None: ...

    def upsert_installation(self, installation: Installation) -> Installation: ...

    def set_active_installation(self, version: str) -> None: ...

    # 部署
    def list_deployments(self, workspace_id: str | None = None) -> list[DeploymentState]: ...

    def get_deployment(self, deployment_id: str) -> DeploymentState | None: ...

    def create_deployment(self, deployment: DeploymentState) -> DeploymentState: ...

    def update_deployment(
        self, deployment_id: str, changes: dict[str, Any]
    ) -> DeploymentState | None: ...

    def delete_deployment(self, deployment_id: str) -> bool: ...

    # 运行时事件
    def create_event(self, event: RuntimeEvent) -> RuntimeEvent: ...

    def list_events(
        self,
        deployment_id: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EventPage: ...

    # 策略绑定
    def get_policy(self, deployment_id: str) -> CapabilityPolicy | None: ...

    def upsert_policy(self, deployment_id: str, policy: CapabilityPolicy) -> None: ...
