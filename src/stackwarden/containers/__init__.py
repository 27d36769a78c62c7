"""Container lifecycle management for managed services.

This package provides:
- ContainerLifecycleManager: per-container and whole-stack image updates
- ProgressChannel: fan-out of update progress events to observers
"""

from stackwarden.containers.manager import ContainerLifecycleManager
from stackwarden.containers.progress import ProgressChannel, ProgressStatus, UpdateProgress

__all__ = ["ContainerLifecycleManager", "ProgressChannel", "ProgressStatus", "UpdateProgress"]
