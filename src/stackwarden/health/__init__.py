"""Health probing for Stackwarden.

This package provides:
- HealthProbe: concurrent API, datastore, cache and container-runtime checks
- HealthCheck: the aggregate verdict used to gate updates
"""

from stackwarden.health.probe import HealthCheck, HealthChecks, HealthProbe

__all__ = ["HealthCheck", "HealthChecks", "HealthProbe"]
