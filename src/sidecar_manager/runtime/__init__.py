"""sidecar-manager runtime module.

Process spawning/termination, health polling, output-to-event bridging and
the per-deployment supervision state machine.
"""

from .event_bridge import EventBridge
from .health import HealthPoller
from .process_runner import ProcessResult, ProcessRunner, ProcessSpec
from .supervisor import (
    LaunchOptions,
    ProcessSupervisor,
    StatusUpdate,
    SupervisorHandle,
    resolve_status_from_health,
    restart_backoff_ms,
)

__all__ = [
    "EventBridge",
    "HealthPoller",
    "LaunchOptions",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessSupervisor",
    "StatusUpdate",
    "SupervisorHandle",
    "resolve_status_from_health",
    "restart_backoff_ms",
]
