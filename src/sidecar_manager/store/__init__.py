"""sidecar-manager 存储层。"""

from .base import RuntimeStore
from .memory import InMemoryRuntimeStore, JsonFileRuntimeStore

__all__ = ["RuntimeStore", "InMemoryRuntimeStore", "JsonFileRuntimeStore"]
