"""Per-deployment process supervision.

sidecar-manager runtime module

State machine:

    starting -> running -> stopping -> stopped
        \\          \\
         +-> error <-+

- Health samples drive starting/running/error (see ``resolve_status_from_health``)
- An exit the operator did not request settles to ``error`` and schedules a
  restart after ``restart_backoff_ms(restart_count)``
- An exit after ``stop()`` (or with desired_state=stopped) settles to
  ``stopped`` and never restarts

Operations on the same deployment are serialized by a per-deployment
asyncio.Lock; the pending restart task is cancelled by ``stop()`` and
``forget()`` so a restart can never race a deliberate shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from ..errors import ProcessSpawnError
from ..models import (
    DeploymentState,
    DeploymentStatus,
    DesiredState,
    EventSeverity,
    HealthStatus,
    RuntimeHealth,
    utcnow,
)
from ..store.base import RuntimeStore
from .event_bridge import STDERR, STDOUT, EventBridge, EventListener
from .health import HealthCallback, HealthPoller
from .process_runner import ProcessRunner, ProcessSpec

__all__ = [
    "ProcessSupervisor",
    "SupervisorHandle",
    "LaunchOptions",
    "StatusUpdate",
    "StatusCallback",
    "restart_backoff_ms",
    "resolve_status_from_health",
]

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 30_000
BASE_BACKOFF_MS = 1_000
MAX_BACKOFF_EXPONENT = 6
DEFAULT_STOP_TIMEOUT = 4.0
READER_DRAIN_TIMEOUT = 1.0


def restart_backoff_ms(restart_count: int) -> int:
    """Capped exponential backoff: min(30000, 1000 * 2 ** min(n, 6))."""
    return min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2 ** min(restart_count, MAX_BACKOFF_EXPONENT))


def resolve_status_from_health(
    previous: DeploymentStatus, health: RuntimeHealth
) -> DeploymentStatus:
    """Map a health sample onto the next deployment status."""
    if health.status == HealthStatus.HEALTHY:
        return DeploymentStatus.RUNNING
    if previous == DeploymentStatus.STARTING and health.status == HealthStatus.UNKNOWN:
        return DeploymentStatus.STARTING
    if health.status == HealthStatus.DEGRADED:
        return DeploymentStatus.RUNNING
    if health.status == HealthStatus.UNHEALTHY:
        if previous == DeploymentStatus.STOPPING:
            return DeploymentStatus.STOPPING
        return DeploymentStatus.ERROR
    return previous


@dataclass
class StatusUpdate:
    pid: int | None = None
    last_error: str | None = None


StatusCallback = Callable[[str, DeploymentStatus, StatusUpdate], None]


@dataclass
class SupervisorHandle:
    """Observable per-deployment state kept in memory."""

    deployment_id: str
    status: DeploymentStatus
    desired_state: DesiredState
    pid: int | None = None
    health: RuntimeHealth | None = None
    started_at: datetime | None = None


@dataclass
class LaunchOptions:
    """Everything needed to (re)spawn a deployment's daemon.

    Attributes:
        deployment: Deployment snapshot (host, port, workspace, model)
        binary_path: Runtime executable
        log_path: Append-only runtime log
        env: Extra environment layered over os.environ
        on_event: Listener for every emitted RuntimeEvent
    """

    deployment: DeploymentState
    binary_path: Path
    log_path: Path
    env: dict[str, str] = field(default_factory=dict)
    on_event: EventListener | None = None


@dataclass
class _Record:
    handle: SupervisorHandle
    options: LaunchOptions
    bridge: EventBridge
    process: asyncio.subprocess.Process | None = None
    poller: HealthPoller | None = None
    restart_count: int = 0
    restart_task: asyncio.Task[None] | None = None
    monitor_task: asyncio.Task[None] | None = None
    reader_tasks: list[asyncio.Task[None]] = field(default_factory=list)
    stopping: bool = False


class ProcessSupervisor:
    """Owns the runtime process of every started deployment.

    Example:
        supervisor = ProcessSupervisor(store, on_status_change=persist_status)
        await supervisor.start(LaunchOptions(deployment, binary_path, log_path))
        ...
        await supervisor.stop(deployment.id)
    """

    def __init__(
        self,
        store: RuntimeStore,
        *,
        runner: ProcessRunner | None = None,
        env_prefix: str = "ZEROCLAW",
        on_status_change: StatusCallback | None = None,
        on_health: HealthCallback | None = None,
        health_interval: float | None = None,
        health_timeout: float | None = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        self._store = store
        self._runner = runner or ProcessRunner()
        self.env_prefix = env_prefix
        self._on_status_change = on_status_change
        self._on_health = on_health
        self.health_interval = health_interval
        self.health_timeout = health_timeout
        self.stop_timeout = stop_timeout
        self._records: dict[str, _Record] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def bind_listeners(
        self,
        on_status_change: StatusCallback | None = None,
        on_health: HealthCallback | None = None,
    ) -> None:
        """Replace the status/health observers (used by composition roots)."""
        self._on_status_change = on_status_change
        self._on_health = on_health

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_handle(self, deployment_id: str) -> SupervisorHandle | None:
        record = self._records.get(deployment_id)
        return record.handle if record else None

    def get_handles(self) -> list[SupervisorHandle]:
        return [record.handle for record in self._records.values()]

    def get_restart_count(self, deployment_id: str) -> int:
        record = self._records.get(deployment_id)
        return record.restart_count if record else 0

    def _lock_for(self, deployment_id: str) -> asyncio.Lock:
        return self._locks.setdefault(deployment_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, options: LaunchOptions) -> SupervisorHandle:
        """Spawn the daemon unless a live process is already tracked.

        Raises:
            ProcessSpawnError: The executable could not be started
        """
        async with self._lock_for(options.deployment.id):
            return await self._start_locked(options)

    def build_env(self, options: LaunchOptions) -> dict[str, str]:
        deployment = options.deployment
        env = {**os.environ, **options.env}
        env[f"{self.env_prefix}_PROVIDER"] = deployment.model_provider
        env[f"{self.env_prefix}_MODEL"] = deployment.model_name
        env[f"{self.env_prefix}_WORKSPACE"] = deployment.workspace_path
        env[f"{self.env_prefix}_GATEWAY_HOST"] = deployment.gateway_host
        env[f"{self.env_prefix}_GATEWAY_PORT"] = str(deployment.gateway_port)
        return env

    async def _start_locked(self, options: LaunchOptions) -> SupervisorHandle:
        deployment = options.deployment
        existing = self._records.get(deployment.id)
        if existing and existing.process is not None and existing.process.returncode is None:
            return existing.handle
        if existing and existing.restart_task is not None:
            existing.restart_task.cancel()
            existing.restart_task = None

        bridge = EventBridge(deployment.id, options.log_path, self._store, options.on_event)
        record = _Record(
            handle=SupervisorHandle(
                deployment_id=deployment.id,
                status=DeploymentStatus.STARTING,
                desired_state=DesiredState.RUNNING,
                started_at=utcnow(),
            ),
            options=options,
            bridge=bridge,
            restart_count=existing.restart_count if existing else 0,
        )
        self._records[deployment.id] = record

        spec = ProcessSpec(
            argv=[
                str(options.binary_path),
                "daemon",
                "--host", deployment.gateway_host,
                "--port", str(deployment.gateway_port),
            ],
            cwd=Path(deployment.workspace_path),
            env=self.build_env(options),
        )
        try:
            process = await self._runner.spawn(spec)
        except OSError as e:
            message = str(e) or type(e).__name__
            logger.error(f"[SUPERVISOR] Failed to spawn {deployment.id}: {message}")
            bridge.emit_process_event("process_error", EventSeverity.ERROR, message)
            self._update_status(deployment.id, DeploymentStatus.ERROR, StatusUpdate(last_error=message))
            raise ProcessSpawnError(message) from e

        record.process = process
        record.handle.pid = process.pid
        self._update_status(deployment.id, DeploymentStatus.STARTING, StatusUpdate(pid=process.pid))
        bridge.emit_process_event(
            "process_spawned",
            EventSeverity.INFO,
            f"Runtime daemon started (pid {process.pid}).",
            {
                "pid": process.pid,
                "host": deployment.gateway_host,
                "port": deployment.gateway_port,
            },
        )
        logger.info(
            f"[SUPERVISOR] {deployment.id} spawned pid={process.pid} "
            f"on {deployment.gateway_host}:{deployment.gateway_port}"
        )

        record.reader_tasks = [
            asyncio.create_task(self._pump(process.stdout, bridge, STDOUT)),
            asyncio.create_task(self._pump(process.stderr, bridge, STDERR)),
        ]
        record.monitor_task = asyncio.create_task(
            self._monitor(record, process), name=f"monitor-{deployment.id}"
        )

        poller = HealthPoller(
            deployment.id,
            deployment.api_base_url,
            lambda health: self._handle_health(deployment.id, health),
            interval=self.health_interval,
            timeout=self.health_timeout,
        )
        poller.start()
        record.poller = poller
        return record.handle

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        bridge: EventBridge,
        name: str,
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            bridge.ingest(name, chunk)

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    async def _monitor(self, record: _Record, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if record.reader_tasks:
            _, pending = await asyncio.wait(record.reader_tasks, timeout=READER_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
        record.bridge.flush()
        self._handle_exit(record, returncode)

    def _handle_exit(self, record: _Record, returncode: int) -> None:
        deployment_id = record.handle.deployment_id
        if self._records.get(deployment_id) is not record:
            return

        if record.poller is not None:
            record.poller.stop()
            record.poller = None
        record.process = None

        code: int | None = returncode
        signal_name: str | None = None
        if returncode < 0:
            code = None
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)

        record.bridge.emit_process_event(
            "process_exit",
            EventSeverity.INFO if code == 0 else EventSeverity.WARNING,
            f"Runtime daemon exited (code={code}, signal={signal_name}).",
            {"code": code, "signal": signal_name},
        )

        if record.stopping or record.handle.desired_state == DesiredState.STOPPED:
            self._update_status(deployment_id, DeploymentStatus.STOPPED)
            return

        self._update_status(
            deployment_id,
            DeploymentStatus.ERROR,
            StatusUpdate(last_error=f"process exited (code={code}, signal={signal_name})"),
        )

        record.restart_count += 1
        delay_ms = restart_backoff_ms(record.restart_count)
        logger.warning(
            f"[SUPERVISOR] {deployment_id} exited unexpectedly, "
            f"restart #{record.restart_count} in {delay_ms}ms"
        )
        record.bridge.emit_process_event(
            "process_restart_scheduled",
            EventSeverity.WARNING,
            f"Restart scheduled in {delay_ms}ms.",
            {"restartCount": record.restart_count, "delayMs": delay_ms},
        )
        record.restart_task = asyncio.create_task(
            self._delayed_restart(record, delay_ms), name=f"restart-{deployment_id}"
        )

    async def _delayed_restart(self, record: _Record, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000)
        record.restart_task = None
        deployment_id = record.handle.deployment_id
        if self._records.get(deployment_id) is not record:
            return
        if record.handle.desired_state == DesiredState.STOPPED:
            return
        record.stopping = False
        try:
            await self.start(record.options)
        except ProcessSpawnError as e:
            logger.error(f"[SUPERVISOR] Restart of {deployment_id} failed: {e}")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _handle_health(self, deployment_id: str, health: RuntimeHealth) -> None:
        record = self._records.get(deployment_id)
        if record is None:
            return
        record.handle.health = health
        if self._on_health:
            try:
                self._on_health(health)
            except Exception as e:
                logger.warning(f"Health listener failed for {deployment_id}: {e}")

        next_status = resolve_status_from_health(record.handle.status, health)
        if next_status != record.handle.status:
            self._update_status(deployment_id, next_status, StatusUpdate(last_error=health.error))

    # ------------------------------------------------------------------
    # Stop / restart / forget
    # ------------------------------------------------------------------

    async def stop(self, deployment_id: str) -> None:
        """Stop the daemon: SIGTERM, wait ``stop_timeout``, then SIGKILL.

        Returns once the process has exited (immediately if none runs).
        """
        async with self._lock_for(deployment_id):
            record = self._records.get(deployment_id)
            if record is None:
                return

            record.handle.desired_state = DesiredState.STOPPED
            record.stopping = True
            self._update_status(deployment_id, DeploymentStatus.STOPPING)

            if record.restart_task is not None:
                record.restart_task.cancel()
                record.restart_task = None

            process = record.process
            if process is not None and process.returncode is None:
                await self._runner.terminate(process, term_timeout=self.stop_timeout)

            monitor = record.monitor_task
            if monitor is not None and not monitor.done():
                await asyncio.wait({monitor})
            else:
                if record.poller is not None:
                    record.poller.stop()
                    record.poller = None
                self._update_status(deployment_id, DeploymentStatus.STOPPED)

    async def restart(self, deployment_id: str) -> SupervisorHandle | None:
        record = self._records.get(deployment_id)
        if record is None:
            return None
        options = record.options
        await self.stop(deployment_id)
        return await self.start(options)

    async def stop_all(self) -> None:
        await asyncio.gather(*(self.stop(deployment_id) for deployment_id in list(self._records)))

    async def forget(self, deployment_id: str) -> None:
        """Cancel timers, stop the poller and drop all state for a deployment."""
        async with self._lock_for(deployment_id):
            record = self._records.pop(deployment_id, None)
            if record is None:
                return
            if record.restart_task is not None:
                record.restart_task.cancel()
            if record.poller is not None:
                record.poller.stop()
            if record.process is not None and record.process.returncode is None:
                logger.warning(f"[SUPERVISOR] Forgetting {deployment_id} with a live process")
        self._locks.pop(deployment_id, None)

    def _update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        update: StatusUpdate | None = None,
    ) -> None:
        record = self._records.get(deployment_id)
        if record is None:
            return
        update = update or StatusUpdate()
        record.handle.status = status
        if update.pid is not None:
            record.handle.pid = update.pid
        if self._on_status_change:
            try:
                self._on_status_change(deployment_id, status, update)
            except Exception as e:
                logger.warning(f"Status listener failed for {deployment_id}: {e}")
