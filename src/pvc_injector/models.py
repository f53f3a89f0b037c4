from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

STAGING_SUFFIX = "-src"
INJECTOR_SUFFIX = "-injector"

PHASE_PENDING = "Pending"
PHASE_BOUND = "Bound"
PHASE_LOST = "Lost"

WORKFLOW_RUNNING = "running"
WORKFLOW_SUCCEEDED = "succeeded"
WORKFLOW_FAILED = "failed"


@dataclass(frozen=True)
class ObjectStoreSource:
    endpoint: str
    use_tls: bool
    bucket: str
    prefix: str
    access_key: str
    secret_key: str

    @property
    def origin(self) -> str:
        return f"{self.endpoint}/{self.bucket}/{self.prefix}"

    @property
    def scheme(self) -> str:
        return "https" if self.use_tls else "http"

    @property
    def object_path(self) -> str:
        return f"{self.bucket}/{self.prefix}"

    def __repr__(self) -> str:
        return (
            f"ObjectStoreSource(endpoint={self.endpoint!r}, use_tls={self.use_tls!r}, "
            f"bucket={self.bucket!r}, prefix={self.prefix!r})"
        )


@dataclass(frozen=True)
class VolumeTarget:
    namespace: str
    name: str
    storage_class: str = ""

    @property
    def staging_name(self) -> str:
        return f"{self.name}{STAGING_SUFFIX}"

    @property
    def job_name(self) -> str:
        return f"{self.name}{INJECTOR_SUFFIX}"


@dataclass(frozen=True)
class ProvisioningRequest:
    source: ObjectStoreSource
    target: VolumeTarget


@dataclass(frozen=True)
class SizeSummary:
    object_count: int
    total_bytes: int


@dataclass(frozen=True)
class VolumeClaim:
    name: str
    namespace: str
    phase: str
    access_modes: tuple[str, ...] = ()
    requested_capacity_bytes: int | None = None
    clone_source: str | None = None
    finalizers: tuple[str, ...] = ()
    volume_name: str | None = None
    storage_class: str | None = None
    capacity: str | None = None

    @property
    def is_bound(self) -> bool:
        return self.phase == PHASE_BOUND


@dataclass(frozen=True)
class CopyJob:
    name: str
    namespace: str
    active_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.succeeded_count > 0

    @property
    def failed(self) -> bool:
        return self.failed_count > 0


@dataclass(frozen=True)
class PodSummary:
    name: str
    namespace: str
    phase: str
    created_at: str | None = None


@dataclass(frozen=True)
class ProvisioningResult:
    namespace: str
    name: str
    staging_name: str
    requested_capacity: int
    summary: SizeSummary
    estimated_runtime_seconds: float


@dataclass(frozen=True)
class WorkflowRecord:
    namespace: str
    name: str
    state: str
    step: str
    message: str
    started_at: str
    finished_at: str | None = None


@dataclass(frozen=True)
class StatusReport:
    job_has_error: bool = False
    job_error: str = ""
    job_phase: str = ""
    claim_has_error: bool = False
    claim_error: str = ""
    claim_name: str = ""
    claim_phase: str = ""
    claim_capacity: str = ""
    workflow_state: str = ""
    workflow_step: str = ""
    workflow_error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
