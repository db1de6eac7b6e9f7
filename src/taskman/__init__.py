"""Task orchestration core for externally spawned agent workers."""

__version__ = "0.1.0"
