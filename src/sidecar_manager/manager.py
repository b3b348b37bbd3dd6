"""运行时管理器。

组合安装器、进程监督器、能力策略解析器与存储，对外提供部署生命周期操作：

    安装      get_install_status / install_version / upgrade / verify_installation
    部署      create / update / delete / list / get
    策略      get_policy / set_policy / refresh_capabilities
    进程      start_runtime / stop_runtime / restart_runtime / hydrate / shutdown
    观测      get_health / get_logs / run_doctor
    消息      stream_message

所有依赖通过构造函数注入，由 app.build_manager() 作为组合根创建，不使用模块级单例。
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Union

import anyio

from .capabilities import CapabilityPolicyResolver, merge_policy, normalize_policy
from .config import PROVIDER_KEY_ENV, Config, get_config
from .errors import DeploymentNotFoundError, InstallError
from .install import InstallActivity, Installer
from .layout import DeploymentLayout
from .models import (
    DEFAULT_WORKSPACE_ID,
    ActionResult,
    CapabilityPolicy,
    DeploymentSpec,
    DeploymentState,
    DeploymentStatus,
    DeploymentUpdate,
    DesiredState,
    DoctorCheck,
    DoctorReport,
    EffectiveCapabilitySet,
    EventPage,
    EventSeverity,
    HealthStatus,
    InstallationStatus,
    InstallStatus,
    RuntimeEvent,
    RuntimeHealth,
)
from .registry import CapabilityRegistry
from .runtime import LaunchOptions, ProcessSupervisor, StatusUpdate
from .store import RuntimeStore
from .stream import WebhookStreamAttempt, stream_webhook
from .stream.payloads import TokenCallback

__all__ = ["Manager", "ApiKeySource", "find_available_port"]

logger = logging.getLogger(__name__)

# provider -> key 的映射，或按 provider 返回 key 的函数
ApiKeySource = Union[Mapping[str, str], Callable[[str], Union[str, None]]]

_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: EventSeverity.INFO,
    HealthStatus.DEGRADED: EventSeverity.WARNING,
    HealthStatus.UNHEALTHY: EventSeverity.ERROR,
    HealthStatus.UNKNOWN: EventSeverity.DEBUG,
}


def find_available_port(preferred: int | None = None) -> int:
    """返回可用的本地端口。

    preferred 为正整数时直接使用，否则绑定 127.0.0.1:0 由系统分配。
    """
    if preferred is not None and preferred > 0:
        return preferred
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class Manager:
    """部署生命周期管理器。

    Example:
        ```python
        manager = build_manager(get_config())
        await manager.hydrate()
        deployment = await manager.create_deployment(DeploymentSpec(
            name="assistant",
            workspace_path="/tmp/work",
            model_provider="anthropic",
            model_name="claude",
        ))
        attempt = await manager.stream_message(deployment.id, "hello", on_token=print)
        await manager.shutdown()
        ```
    """

    def __init__(
        self,
        store: RuntimeStore,
        registry: CapabilityRegistry,
        installer: Installer,
        *,
        supervisor: ProcessSupervisor | None = None,
        api_keys: ApiKeySource | None = None,
        config: Config | None = None,
    ) -> None:
        """初始化管理器。

        Args:
            store: 持久化存储
            registry: 技能/工具/连接器注册表
            installer: 运行时安装器
            supervisor: 进程监督器（默认按配置创建）
            api_keys: 模型提供方 API key 来源（默认读取环境变量）
            config: 配置（默认 get_config()）
        """
        self.config = config or get_config()
        self.store = store
        self.installer = installer
        self.resolver = CapabilityPolicyResolver(registry)
        self._api_keys = api_keys

        if supervisor is None:
            supervisor = ProcessSupervisor(
                store,
                env_prefix=self.config.env_prefix,
                health_interval=self.config.health_interval,
                health_timeout=self.config.health_timeout,
                stop_timeout=self.config.stop_timeout,
            )
        supervisor.bind_listeners(
            on_status_change=self._handle_status_change,
            on_health=self._handle_health,
        )
        self.supervisor = supervisor

        self._health: dict[str, RuntimeHealth] = {}
        self._last_health_status: dict[str, HealthStatus] = {}
        self._last_install_error: str | None = None

    # ------------------------------------------------------------------
    # 监督器回调
    # ------------------------------------------------------------------

    def _handle_status_change(
        self, deployment_id: str, status: DeploymentStatus, update: StatusUpdate
    ) -> None:
        changes: dict[str, Any] = {"status": status}
        if update.pid is not None:
            changes["process_id"] = update.pid
        if update.last_error is not None:
            changes["last_error"] = update.last_error
        if status == DeploymentStatus.STOPPED:
            changes["process_id"] = None

        if self.store.update_deployment(deployment_id, changes) is None:
            return

        self._record_event(
            deployment_id,
            "status",
            EventSeverity.ERROR if status == DeploymentStatus.ERROR else EventSeverity.INFO,
            f"Runtime status changed to {status.value}.",
            {"status": status.value, "pid": update.pid, "lastError": update.last_error},
        )

    def _handle_health(self, health: RuntimeHealth) -> None:
        self._health[health.deployment_id] = health
        if self._last_health_status.get(health.deployment_id) == health.status:
            return
        self._last_health_status[health.deployment_id] = health.status

        if health.status == HealthStatus.HEALTHY:
            message = "Health check OK."
        else:
            message = health.error or f"Health status: {health.status.value}"
        self._record_event(
            health.deployment_id,
            "health",
            _HEALTH_SEVERITY[health.status],
            message,
            {
                "status": health.status.value,
                "latencyMs": health.latency_ms,
                "detail": health.detail or {},
            },
        )

    def _record_event(
        self,
        deployment_id: str,
        event_type: str,
        severity: EventSeverity,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> RuntimeEvent:
        return self.store.create_event(
            RuntimeEvent(
                deployment_id=deployment_id,
                event_type=event_type,
                severity=severity,
                message=message,
                payload=payload or {},
            )
        )

    # ------------------------------------------------------------------
    # 启动 / 关闭
    # ------------------------------------------------------------------

    async def hydrate(self) -> None:
        """拉起所有 desired_state=running 的部署，失败记为事件而不抛出。"""
        for deployment in self.store.list_deployments():
            if deployment.desired_state != DesiredState.RUNNING:
                continue
            try:
                await self.start_runtime(deployment.id)
            except Exception as e:
                logger.error(f"Failed to start deployment {deployment.id} on launch: {e}")
                self._record_event(
                    deployment.id,
                    "hydrate_start_failed",
                    EventSeverity.ERROR,
                    str(e) or "Failed to start deployment on launch",
                )

    async def shutdown(self) -> None:
        await self.supervisor.stop_all()

    # ------------------------------------------------------------------
    # 安装
    # ------------------------------------------------------------------

    def get_install_status(self) -> InstallStatus:
        return self.installer.get_install_status(self._last_install_error)

    def get_install_activity(self) -> InstallActivity:
        return self.installer.get_install_activity()

    async def install_version(self, version: str | None = None) -> InstallStatus:
        try:
            await self.installer.install_version(version)
        except Exception as e:
            self._last_install_error = str(e) or "Install failed"
            raise
        self._last_install_error = None
        return self.get_install_status()

    async def upgrade(self, version: str) -> InstallStatus:
        try:
            await self.installer.upgrade(version)
        except Exception as e:
            self._last_install_error = str(e) or "Upgrade failed"
            raise
        self._last_install_error = None
        return self.get_install_status()

    async def verify_installation(self) -> ActionResult:
        return await self.installer.verify_active_installation()

    async def _ensure_runtime_version(self, version: str) -> None:
        installation = self.store.get_installation(version)
        if installation is not None and installation.status == InstallationStatus.INSTALLED:
            return
        await self.install_version(version)

    # ------------------------------------------------------------------
    # 部署
    # ------------------------------------------------------------------

    def list_deployments(self, workspace_id: str | None = None) -> list[DeploymentState]:
        return self.store.list_deployments(workspace_id or DEFAULT_WORKSPACE_ID)

    def get_deployment(self, deployment_id: str) -> DeploymentState | None:
        return self.store.get_deployment(deployment_id)

    def _require_deployment(self, deployment_id: str) -> DeploymentState:
        deployment = self.store.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    def _layout(self, deployment_id: str) -> DeploymentLayout:
        return DeploymentLayout.for_deployment(self.config.deployments_root, deployment_id)

    def _write_files(
        self,
        deployment: DeploymentState,
        policy: CapabilityPolicy,
        effective: EffectiveCapabilitySet,
    ) -> DeploymentLayout:
        return self._layout(deployment.id).write(deployment, policy, effective)

    async def create_deployment(self, spec: DeploymentSpec) -> DeploymentState:
        """创建部署并写入部署文件；auto_start 时立即启动。

        Raises:
            InstallError: auto_start 时运行时版本安装失败
            ProcessSpawnError: auto_start 时进程启动失败
        """
        workspace_id = spec.workspace_id or DEFAULT_WORKSPACE_ID
        active = self.store.get_active_installation()
        runtime_version = (
            spec.runtime_version
            or (active.version if active else None)
            or self.installer.load_manifest().latest_version
        )
        gateway_port = find_available_port(spec.gateway_port)
        gateway_host = spec.gateway_host or "127.0.0.1"
        api_base_url = spec.api_base_url or f"http://{gateway_host}:{gateway_port}"
        policy = normalize_policy(spec.policy)
        effective = self.resolver.resolve(workspace_id, policy)

        deployment = self.store.create_deployment(
            DeploymentState(
                workspace_id=workspace_id,
                name=spec.name,
                description=spec.description,
                runtime_version=runtime_version,
                workspace_path=spec.workspace_path,
                model_provider=spec.model_provider,
                model_name=spec.model_name,
                gateway_host=gateway_host,
                gateway_port=gateway_port,
                api_base_url=api_base_url,
                desired_state=DesiredState.RUNNING if spec.auto_start else DesiredState.STOPPED,
                status=DeploymentStatus.CREATED,
                env=dict(spec.env),
                policy=policy,
                effective_capabilities=effective,
            )
        )
        self.store.upsert_policy(deployment.id, policy)
        self._write_files(deployment, policy, effective)

        self._record_event(
            deployment.id,
            "deployment_created",
            EventSeverity.INFO,
            f'Deployment "{deployment.name}" created.',
            {"runtimeVersion": runtime_version, "workspacePath": deployment.workspace_path},
        )
        logger.info(f"Created deployment {deployment.id} ({deployment.name}) on port {gateway_port}")

        if spec.auto_start:
            await self.start_runtime(deployment.id)
            return self._require_deployment(deployment.id)
        return deployment

    async def update_deployment(
        self, deployment_id: str, updates: DeploymentUpdate | Mapping[str, Any]
    ) -> DeploymentState:
        """合并更新、重算有效能力集并重写部署文件。

        desired_state 变为 running/stopped 时同步启动或停止进程。
        """
        if not isinstance(updates, DeploymentUpdate):
            updates = DeploymentUpdate.model_validate(updates)
        existing = self._require_deployment(deployment_id)

        policy = merge_policy(existing.policy, updates.policy)
        effective = self.resolver.resolve(existing.workspace_id, policy)

        changes = updates.model_dump(exclude_none=True, exclude={"policy"})
        changes.update(policy=policy, effective_capabilities=effective, last_error=None)
        updated = self.store.update_deployment(deployment_id, changes)
        if updated is None:
            raise DeploymentNotFoundError(deployment_id)

        self.store.upsert_policy(deployment_id, policy)
        self._write_files(updated, policy, effective)

        if updates.desired_state == DesiredState.RUNNING:
            await self.start_runtime(deployment_id)
        elif updates.desired_state == DesiredState.STOPPED:
            await self.stop_runtime(deployment_id)

        self._record_event(
            deployment_id,
            "deployment_updated",
            EventSeverity.INFO,
            f'Deployment "{updated.name}" updated.',
        )
        return self._require_deployment(deployment_id)

    async def delete_deployment(self, deployment_id: str) -> None:
        self._require_deployment(deployment_id)
        await self.supervisor.stop(deployment_id)
        await self.supervisor.forget(deployment_id)
        self._health.pop(deployment_id, None)
        self._last_health_status.pop(deployment_id, None)
        self.store.delete_deployment(deployment_id)
        logger.info(f"Deleted deployment {deployment_id}")

    # ------------------------------------------------------------------
    # 能力策略
    # ------------------------------------------------------------------

    def get_policy(self, deployment_id: str) -> CapabilityPolicy:
        """部署绑定的策略；无绑定时回退到部署记录上的策略。"""
        policy = self.store.get_policy(deployment_id)
        if policy is not None:
            return policy
        deployment = self._require_deployment(deployment_id)
        return normalize_policy(deployment.policy)

    async def set_policy(
        self, deployment_id: str, policy: CapabilityPolicy | Mapping[str, Any]
    ) -> DeploymentState:
        deployment = self._require_deployment(deployment_id)
        normalized = normalize_policy(policy)
        effective = self.resolver.resolve(deployment.workspace_id, normalized)

        self.store.upsert_policy(deployment_id, normalized)
        updated = self.store.update_deployment(
            deployment_id,
            {"policy": normalized, "effective_capabilities": effective},
        )
        if updated is None:
            raise DeploymentNotFoundError(deployment_id)
        self._write_files(updated, normalized, effective)
        return updated

    def refresh_capabilities(self, deployment_id: str | None = None) -> list[DeploymentState]:
        """注册表变化后重算有效能力集。

        Args:
            deployment_id: 仅刷新该部署；None 表示全部部署

        Returns:
            更新后的部署列表
        """
        if deployment_id is not None:
            targets = [self._require_deployment(deployment_id)]
        else:
            targets = self.store.list_deployments()

        refreshed: list[DeploymentState] = []
        for deployment in targets:
            policy = self.get_policy(deployment.id)
            effective = self.resolver.resolve(deployment.workspace_id, policy)
            updated = self.store.update_deployment(
                deployment.id, {"effective_capabilities": effective}
            )
            if updated is None:
                continue
            self._write_files(updated, policy, effective)
            refreshed.append(updated)
        return refreshed

    # ------------------------------------------------------------------
    # 进程
    # ------------------------------------------------------------------

    def _resolve_api_key(self, provider: str) -> str | None:
        if callable(self._api_keys):
            return self._api_keys(provider)
        if self._api_keys is not None:
            return self._api_keys.get(provider)
        env_name = PROVIDER_KEY_ENV.get(provider.strip().lower())
        return os.environ.get(env_name) if env_name else None

    def _build_runtime_env(self, deployment: DeploymentState) -> dict[str, str]:
        env = dict(deployment.env)
        key = self._resolve_api_key(deployment.model_provider)
        if key:
            env[self.config.env_name("API_KEY")] = key
        return env

    async def start_runtime(self, deployment_id: str) -> DeploymentState:
        """确保版本已安装并启动部署进程。

        Raises:
            DeploymentNotFoundError: 部署不存在
            InstallError: 版本安装失败
            ProcessSpawnError: 进程启动失败
        """
        deployment = self._require_deployment(deployment_id)
        await self._ensure_runtime_version(deployment.runtime_version)

        installation = self.store.get_installation(deployment.runtime_version)
        if installation is None or installation.status != InstallationStatus.INSTALLED:
            raise InstallError(f"Runtime version {deployment.runtime_version} is not installed.")

        self.config.runtime_root.mkdir(parents=True, exist_ok=True)
        policy = self.get_policy(deployment_id)
        layout = self._write_files(deployment, policy, deployment.effective_capabilities)

        env = self._build_runtime_env(deployment)
        env["HOME"] = str(layout.home_dir)

        await self.supervisor.start(
            LaunchOptions(
                deployment=deployment,
                binary_path=Path(installation.binary_path),
                log_path=layout.log_path,
                env=env,
            )
        )

        updated = self.store.update_deployment(
            deployment_id, {"desired_state": DesiredState.RUNNING}
        )
        if updated is None:
            raise DeploymentNotFoundError(deployment_id)
        return updated

    async def stop_runtime(self, deployment_id: str) -> DeploymentState:
        self._require_deployment(deployment_id)
        await self.supervisor.stop(deployment_id)
        updated = self.store.update_deployment(
            deployment_id,
            {
                "desired_state": DesiredState.STOPPED,
                "status": DeploymentStatus.STOPPED,
                "process_id": None,
            },
        )
        if updated is None:
            raise DeploymentNotFoundError(deployment_id)
        return updated

    async def restart_runtime(self, deployment_id: str) -> DeploymentState:
        """重启部署进程；监督器中尚无记录时等同于 start_runtime。"""
        self._require_deployment(deployment_id)
        handle = await self.supervisor.restart(deployment_id)
        if handle is None:
            return await self.start_runtime(deployment_id)

        updated = self.store.update_deployment(
            deployment_id,
            {"desired_state": DesiredState.RUNNING, "status": handle.status},
        )
        if updated is None:
            raise DeploymentNotFoundError(deployment_id)
        return updated

    # ------------------------------------------------------------------
    # 观测
    # ------------------------------------------------------------------

    def get_health(self, deployment_id: str) -> RuntimeHealth:
        return self._health.get(deployment_id) or RuntimeHealth(deployment_id=deployment_id)

    def get_logs(
        self,
        deployment_id: str,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> EventPage:
        return self.store.list_events(deployment_id, cursor=cursor, limit=limit)

    async def run_doctor(self, deployment_id: str | None = None) -> DoctorReport:
        """诊断安装与部署环境。

        检查项:
            runtime-installed   存在活跃安装
            runtime-integrity   活跃版本二进制存在且校验通过
            deployment-exists   （指定部署但不存在时）
            workspace-path      工作目录存在
            provider-key        模型提供方 API key 可用
        """
        checks: list[DoctorCheck] = []
        active = self.store.get_active_installation()

        checks.append(
            DoctorCheck(
                id="runtime-installed",
                label="Runtime installation",
                ok=active is not None,
                details=(
                    f"Active version {active.version}"
                    if active
                    else "No active runtime installation found."
                ),
                repair_hint=(
                    None if active else "Install a runtime version before starting deployments."
                ),
            )
        )

        if active is not None:
            verify = await self.installer.verify_installed_version(active.version)
            checks.append(
                DoctorCheck(
                    id="runtime-integrity",
                    label="Binary integrity",
                    ok=verify.ok,
                    details=verify.message,
                    repair_hint=(
                        None if verify.ok else "Reinstall runtime version to repair binary."
                    ),
                )
            )

        if deployment_id is not None:
            deployment = self.store.get_deployment(deployment_id)
            if deployment is None:
                checks.append(
                    DoctorCheck(
                        id="deployment-exists",
                        label="Deployment exists",
                        ok=False,
                        details="Deployment not found.",
                    )
                )
            else:
                workspace_ok = Path(deployment.workspace_path).exists()
                key_ok = bool(self._resolve_api_key(deployment.model_provider))
                checks.append(
                    DoctorCheck(
                        id="workspace-path",
                        label="Workspace path accessible",
                        ok=workspace_ok,
                        details=deployment.workspace_path,
                        repair_hint=(
                            None
                            if workspace_ok
                            else "Update deployment workspace path to an existing directory."
                        ),
                    )
                )
                checks.append(
                    DoctorCheck(
                        id="provider-key",
                        label="Provider API key present",
                        ok=key_ok,
                        details=deployment.model_provider,
                        repair_hint=(
                            None
                            if key_ok
                            else f"Set the {deployment.model_provider} API key before starting runtime."
                        ),
                    )
                )

        return DoctorReport(
            deployment_id=deployment_id,
            healthy=all(check.ok for check in checks),
            checks=checks,
        )

    # ------------------------------------------------------------------
    # 消息
    # ------------------------------------------------------------------

    async def stream_message(
        self,
        deployment_id: str,
        message: str,
        *,
        cancel_scope: anyio.CancelScope | None = None,
        token: str | None = None,
        on_token: TokenCallback | None = None,
        synthetic_streaming_fallback: bool = True,
    ) -> WebhookStreamAttempt:
        """把消息发给部署的 /webhook 并流式返回回复。"""
        deployment = self._require_deployment(deployment_id)
        return await stream_webhook(
            deployment.api_base_url,
            message,
            cancel_scope=cancel_scope,
            token=token,
            on_token=on_token,
            synthetic_streaming_fallback=synthetic_streaming_fallback,
        )
