from __future__ import annotations

import platform

from prometheus_client import REGISTRY, Counter

SERVICE_INFO = Counter(
    "pvci_service_info",
    "Static service information, incremented once at startup.",
    labelnames=["python_version", "version", "mode", "service"],
    registry=REGISTRY,
)

WORKFLOWS_TOTAL = Counter(
    "pvci_workflows_total",
    "Provisioning workflow outcomes by terminal step.",
    labelnames=["outcome", "step"],
    registry=REGISTRY,
)

CLEANUP_FAILURES_TOTAL = Counter(
    "pvci_cleanup_failures_total",
    "Best-effort cleanup actions that failed and may have left resources behind.",
    labelnames=["resource"],
    registry=REGISTRY,
)


def record_service_info(*, version: str, mode: str, service: str) -> None:
    SERVICE_INFO.labels(
        python_version=platform.python_version(),
        version=version,
        mode=mode,
        service=service,
    ).inc()
