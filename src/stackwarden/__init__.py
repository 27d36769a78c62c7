"""Stackwarden: in-place self-update and container lifecycle orchestration.

Upgrades a deployed multi-service installation (health check, backup, fetch,
install, migrate, build, verify, roll back on failure) and refreshes its
containers from newly pulled images.
"""

__version__ = "0.4.0"
