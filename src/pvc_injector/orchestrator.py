from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import time
from typing import Callable

from kubernetes import client
import structlog

from .config import DEFAULT_COPY_IMAGE
from .errors import (
    BoundTimeoutError,
    ConflictError,
    JobFailureError,
    JobTimeoutError,
    ProvisioningError,
    ResourceConflictError,
    ResourceError,
    ResourceNotFoundError,
    ValidationError,
    error_message,
)
from .k8s import MANAGED_BY_LABEL, MANAGED_BY_VALUE, ResourceGateway
from .metrics import CLEANUP_FAILURES_TOTAL, WORKFLOWS_TOTAL
from .models import (
    PHASE_BOUND,
    PHASE_LOST,
    ObjectStoreSource,
    ProvisioningRequest,
    ProvisioningResult,
    SizeSummary,
    VolumeTarget,
)
from .objectstore import SizeEstimator
from .poller import (
    CLAIM_BOUND_SCHEDULE,
    CheckOutcome,
    CheckResult,
    PollStatus,
    estimate_runtime_seconds,
    job_completion_schedule,
    poll,
)

LABEL_PREFIX = "pvci.txn2.com"
TARGET_LABEL = f"{LABEL_PREFIX}/target"
ROLE_LABEL = f"{LABEL_PREFIX}/role"
MEBIBYTES_PER_MEGABYTE = 1.048576
COPY_VOLUME_NAME = "attached-pvc"
COPY_CONTAINER_NAME = "injector"
OBJECT_STORE_ALIAS = "objstore"
REMOVE_FIRST_FINALIZER = [{"op": "remove", "path": "/metadata/finalizers/0"}]


class WorkflowStep(str, Enum):
    VALIDATING = "validating"
    SIZING = "sizing"
    STAGING_CREATED = "staging_created"
    STAGING_BOUND = "staging_bound"
    COPY_JOB_CREATED = "copy_job_created"
    COPY_JOB_SUCCEEDED = "copy_job_succeeded"
    FINAL_CLAIM_CREATED = "final_claim_created"
    FINAL_CLAIM_BOUND = "final_claim_bound"
    STAGING_RECLAIMED = "staging_reclaimed"
    DONE = "done"


StepCallback = Callable[[str], None]


@dataclass(frozen=True)
class OrchestratorConfig:
    service: str = "pvci"
    version: str = "0.0.0"
    overage_percent: int = 25
    transfer_rate_mbps: float = 13
    copy_image: str = DEFAULT_COPY_IMAGE
    mount_path: str = "/data"
    job_ttl_seconds: int = 120


def compute_requested_capacity(total_bytes: int, overage_percent: float) -> int:
    """MiB/MB conversion plus a safety margin for copy buffers."""
    if total_bytes < 0:
        raise ValueError("total_bytes must be >= 0")
    if overage_percent < 0:
        raise ValueError("overage_percent must be >= 0")
    return math.ceil(total_bytes * MEBIBYTES_PER_MEGABYTE * (1 + overage_percent / 100))


class ProvisioningOrchestrator:
    def __init__(
        self,
        *,
        gateway: ResourceGateway,
        size_estimator: SizeEstimator,
        config: OrchestratorConfig,
        logger: structlog.stdlib.BoundLogger,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.size_estimator = size_estimator
        self.config = config
        self._log = logger.bind(component="orchestrator")
        self._sleep = sleep

    def provision(self, request: ProvisioningRequest, *, on_step: StepCallback | None = None) -> ProvisioningResult:
        """Drive one request from validation to a bound read-only claim.

        ``on_step`` receives each step name as the workflow enters it.
        Raises a :class:`ProvisioningError` subclass tagged with the failing step.
        """
        target = request.target
        log = self._log.bind(namespace=target.namespace, name=target.name)
        step = _enter(WorkflowStep.VALIDATING, on_step)
        try:
            self._validate(target)

            step = _enter(WorkflowStep.SIZING, on_step)
            summary = self.size_estimator.summarize(request.source)
            capacity = compute_requested_capacity(summary.total_bytes, self.config.overage_percent)
            runtime_seconds = estimate_runtime_seconds(summary.total_bytes, self.config.transfer_rate_mbps)
            log.info(
                "provision.sized",
                objects=summary.object_count,
                bytes=summary.total_bytes,
                requested_capacity=capacity,
                estimated_runtime_seconds=round(runtime_seconds, 2),
            )

            step = _enter(WorkflowStep.STAGING_CREATED, on_step)
            self._create_staging_claim(request=request, summary=summary, capacity=capacity)
            log.info("provision.staging.created", claim=target.staging_name)

            step = _enter(WorkflowStep.STAGING_BOUND, on_step)
            try:
                self._wait_for_claim_bound(namespace=target.namespace, claim_name=target.staging_name)
            except ProvisioningError:
                log.warning("provision.staging.left_in_place", claim=target.staging_name)
                raise
            log.info("provision.staging.bound", claim=target.staging_name)

            step = _enter(WorkflowStep.COPY_JOB_CREATED, on_step)
            self._create_copy_job(request=request, log=log)
            log.info("provision.job.created", job=target.job_name)

            step = _enter(WorkflowStep.COPY_JOB_SUCCEEDED, on_step)
            self._wait_for_copy_job(target=target, total_bytes=summary.total_bytes, log=log)
            log.info("provision.job.succeeded", job=target.job_name)
            self._best_effort_delete_job(target=target, log=log)

            step = _enter(WorkflowStep.FINAL_CLAIM_CREATED, on_step)
            try:
                self._create_final_claim(request=request, summary=summary, capacity=capacity)
            except ProvisioningError:
                log.warning("provision.staging.left_in_place", claim=target.staging_name)
                raise
            log.info("provision.final.created", claim=target.name, clone_source=target.staging_name)

            step = _enter(WorkflowStep.FINAL_CLAIM_BOUND, on_step)
            # The staging claim is already Bound here; only the clone's phase
            # shows whether provisioning finished.
            self._wait_for_claim_bound(namespace=target.namespace, claim_name=target.name)
            log.info("provision.final.bound", claim=target.name)

            step = _enter(WorkflowStep.STAGING_RECLAIMED, on_step)
            self._reclaim_staging_claim(target=target, log=log)
        except ProvisioningError as error:
            if not error.step:
                error.step = step.value
            WORKFLOWS_TOTAL.labels(outcome="failed", step=error.step).inc()
            log.error("provision.failed", step=error.step, error=str(error), error_type=type(error).__name__)
            raise

        WORKFLOWS_TOTAL.labels(outcome="succeeded", step=WorkflowStep.DONE.value).inc()
        log.info("provision.done", claim=target.name, requested_capacity=capacity)
        return ProvisioningResult(
            namespace=target.namespace,
            name=target.name,
            staging_name=target.staging_name,
            requested_capacity=capacity,
            summary=summary,
            estimated_runtime_seconds=runtime_seconds,
        )

    def _validate(self, target: VolumeTarget) -> None:
        if not target.namespace.strip() or not target.name.strip():
            raise ValidationError("namespace and name are required", step=WorkflowStep.VALIDATING.value)
        for claim_name in (target.name, target.staging_name):
            try:
                self.gateway.volume_claims.get(target.namespace, claim_name)
            except ResourceNotFoundError:
                continue
            raise ConflictError(
                f"PVC '{target.namespace}/{claim_name}' already exists",
                step=WorkflowStep.VALIDATING.value,
            )

    def _create_staging_claim(self, *, request: ProvisioningRequest, summary: SizeSummary, capacity: int) -> None:
        body = build_staging_claim(
            request=request,
            summary=summary,
            capacity=capacity,
            service=self.config.service,
            version=self.config.version,
        )
        try:
            self.gateway.volume_claims.create(request.target.namespace, body)
        except ResourceConflictError as error:
            raise ConflictError(str(error), step=WorkflowStep.STAGING_CREATED.value) from error

    def _wait_for_claim_bound(self, *, namespace: str, claim_name: str) -> None:
        def check() -> CheckResult | CheckOutcome:
            claim = self.gateway.volume_claims.get(namespace, claim_name)
            if claim.phase == PHASE_BOUND:
                return CheckResult.DONE
            if claim.phase == PHASE_LOST:
                return CheckOutcome(CheckResult.FAILED, reason=f"PVC '{namespace}/{claim_name}' entered phase Lost")
            return CheckResult.PENDING

        outcome = poll(CLAIM_BOUND_SCHEDULE, check, sleep=self._sleep)
        if outcome.status is PollStatus.FAILURE:
            raise ResourceError(outcome.reason, operation=f"wait for PVC '{namespace}/{claim_name}'")
        if outcome.status is PollStatus.TIMED_OUT:
            raise BoundTimeoutError(
                f"PVC '{namespace}/{claim_name}' did not reach Bound after {outcome.attempts} checks"
            )

    def _create_copy_job(self, *, request: ProvisioningRequest, log: structlog.stdlib.BoundLogger) -> None:
        body = build_copy_job(
            request=request,
            image=self.config.copy_image,
            mount_path=self.config.mount_path,
            ttl_seconds=self.config.job_ttl_seconds,
            service=self.config.service,
            version=self.config.version,
        )
        try:
            self.gateway.jobs.create(request.target.namespace, body)
        except ResourceError:
            log.error("provision.job.create_failed", job=request.target.job_name)
            self._best_effort_delete_claim(
                namespace=request.target.namespace,
                claim_name=request.target.staging_name,
                log=log,
            )
            raise

    def _wait_for_copy_job(self, *, target: VolumeTarget, total_bytes: int, log: structlog.stdlib.BoundLogger) -> None:
        def check() -> CheckResult | CheckOutcome:
            job = self.gateway.jobs.get(target.namespace, target.job_name)
            if job.failed:
                return CheckOutcome(CheckResult.FAILED, reason="job failed")
            if job.succeeded:
                return CheckResult.DONE
            return CheckResult.PENDING

        schedule = job_completion_schedule(total_bytes, self.config.transfer_rate_mbps)
        log.info("provision.job.waiting", job=target.job_name, attempts=len(schedule))
        outcome = poll(schedule, check, sleep=self._sleep)
        if outcome.succeeded:
            return

        self._best_effort_delete_claim(namespace=target.namespace, claim_name=target.staging_name, log=log)
        if outcome.status is PollStatus.FAILURE:
            raise JobFailureError(outcome.reason or "job failed")
        raise JobTimeoutError("job is unable to complete in allotted time")

    def _create_final_claim(self, *, request: ProvisioningRequest, summary: SizeSummary, capacity: int) -> None:
        body = build_final_claim(
            request=request,
            summary=summary,
            capacity=capacity,
            service=self.config.service,
            version=self.config.version,
        )
        try:
            self.gateway.volume_claims.create(request.target.namespace, body)
        except ResourceConflictError as error:
            raise ConflictError(str(error), step=WorkflowStep.FINAL_CLAIM_CREATED.value) from error

    def _reclaim_staging_claim(self, *, target: VolumeTarget, log: structlog.stdlib.BoundLogger) -> None:
        namespace = target.namespace
        claim_name = target.staging_name
        if not self._best_effort_delete_claim(namespace=namespace, claim_name=claim_name, log=log):
            return

        try:
            remaining = self.gateway.volume_claims.get(namespace, claim_name)
        except ResourceNotFoundError:
            log.info("provision.staging.reclaimed", claim=claim_name)
            return
        except ResourceError as error:
            self._report_cleanup_failure(resource="pvc", name=claim_name, error=error, log=log)
            return

        if not remaining.finalizers:
            log.info("provision.staging.reclaimed", claim=claim_name)
            return

        try:
            self.gateway.volume_claims.patch(namespace, claim_name, REMOVE_FIRST_FINALIZER)
        except ResourceNotFoundError:
            pass
        except ResourceError as error:
            self._report_cleanup_failure(resource="pvc", name=claim_name, error=error, log=log)
            return
        log.info("provision.staging.reclaimed", claim=claim_name, finalizer_removed=remaining.finalizers[0])

    def _best_effort_delete_claim(
        self,
        *,
        namespace: str,
        claim_name: str,
        log: structlog.stdlib.BoundLogger,
    ) -> bool:
        try:
            self.gateway.volume_claims.delete(namespace, claim_name)
        except ResourceNotFoundError:
            return True
        except ResourceError as error:
            self._report_cleanup_failure(resource="pvc", name=claim_name, error=error, log=log)
            return False
        log.info("provision.cleanup.pvc_deleted", claim=claim_name)
        return True

    def _best_effort_delete_job(self, *, target: VolumeTarget, log: structlog.stdlib.BoundLogger) -> None:
        try:
            self.gateway.jobs.delete(target.namespace, target.job_name)
        except ResourceNotFoundError:
            return
        except ResourceError as error:
            self._report_cleanup_failure(resource="job", name=target.job_name, error=error, log=log)

    def _report_cleanup_failure(
        self,
        *,
        resource: str,
        name: str,
        error: Exception,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        CLEANUP_FAILURES_TOTAL.labels(resource=resource).inc()
        log.error("provision.cleanup.failed", resource=resource, resource_name=name, error=error_message(error))


def build_labels(*, target: VolumeTarget, role: str, service: str, version: str) -> dict[str, str]:
    return {
        f"{LABEL_PREFIX}/service": service,
        f"{LABEL_PREFIX}/version": version,
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        TARGET_LABEL: target.name,
        ROLE_LABEL: role,
    }


def build_annotations(*, source: ObjectStoreSource, summary: SizeSummary) -> dict[str, str]:
    return {
        f"{LABEL_PREFIX}/requested_size": str(summary.total_bytes),
        f"{LABEL_PREFIX}/object_count": str(summary.object_count),
        f"{LABEL_PREFIX}/origin": source.origin,
    }


def build_staging_claim(
    *,
    request: ProvisioningRequest,
    summary: SizeSummary,
    capacity: int,
    service: str,
    version: str,
) -> client.V1PersistentVolumeClaim:
    target = request.target
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=target.staging_name,
            namespace=target.namespace,
            labels=build_labels(target=target, role="staging", service=service, version=version),
            annotations=build_annotations(source=request.source, summary=summary),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=target.storage_class or None,
            volume_mode="Filesystem",
            resources=client.V1VolumeResourceRequirements(requests={"storage": str(capacity)}),
        ),
    )


def build_final_claim(
    *,
    request: ProvisioningRequest,
    summary: SizeSummary,
    capacity: int,
    service: str,
    version: str,
) -> client.V1PersistentVolumeClaim:
    target = request.target
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=target.name,
            namespace=target.namespace,
            labels=build_labels(target=target, role="final", service=service, version=version),
            annotations=build_annotations(source=request.source, summary=summary),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadOnlyMany"],
            storage_class_name=target.storage_class or None,
            volume_mode="Filesystem",
            data_source=client.V1TypedLocalObjectReference(
                kind="PersistentVolumeClaim",
                name=target.staging_name,
            ),
            resources=client.V1VolumeResourceRequirements(requests={"storage": str(capacity)}),
        ),
    )


def build_copy_job(
    *,
    request: ProvisioningRequest,
    image: str,
    mount_path: str,
    ttl_seconds: int,
    service: str,
    version: str,
) -> client.V1Job:
    source = request.source
    target = request.target
    labels = build_labels(target=target, role="injector", service=service, version=version)
    return client.V1Job(
        metadata=client.V1ObjectMeta(name=target.job_name, namespace=target.namespace, labels=labels),
        spec=client.V1JobSpec(
            ttl_seconds_after_finished=ttl_seconds,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    restart_policy="OnFailure",
                    volumes=[
                        client.V1Volume(
                            name=COPY_VOLUME_NAME,
                            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                claim_name=target.staging_name,
                                read_only=False,
                            ),
                        )
                    ],
                    containers=[
                        client.V1Container(
                            name=COPY_CONTAINER_NAME,
                            image=image,
                            command=["mc", "cp", "-r", f"{OBJECT_STORE_ALIAS}/{source.object_path}", mount_path],
                            volume_mounts=[client.V1VolumeMount(name=COPY_VOLUME_NAME, mount_path=mount_path)],
                            env=[client.V1EnvVar(name=f"MC_HOST_{OBJECT_STORE_ALIAS}", value=object_store_host_url(source))],
                        )
                    ],
                ),
            ),
        ),
    )


def object_store_host_url(source: ObjectStoreSource) -> str:
    return f"{source.scheme}://{source.access_key}:{source.secret_key}@{source.endpoint}"


def _enter(step: WorkflowStep, on_step: StepCallback | None) -> WorkflowStep:
    if on_step is not None:
        on_step(step.value)
    return step
