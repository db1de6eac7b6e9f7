"""Worker spawn backends."""

from taskman.orchestrator.backend.base import SpawnAdapter, SpawnHandle, SpawnRequest
from taskman.orchestrator.backend.cli_backend import CliSpawnAdapter

__all__ = [
    "CliSpawnAdapter",
    "SpawnAdapter",
    "SpawnHandle",
    "SpawnRequest",
]
