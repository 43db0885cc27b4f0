"""Bridge relayer — monitoring package.

Provides the Prometheus metrics registry exposed on ``/metrics``.
"""

from .metrics import MetricsRegistry

__all__ = [
    "MetricsRegistry",
]
