from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import SimpleNamespace
from typing import Any, Iterator
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from pvc_injector.errors import ResourceConflictError, ResourceError, ResourceNotFoundError
from pvc_injector.k8s import ResourceGateway, volume_claim_from_api
from pvc_injector.models import PHASE_BOUND, CopyJob, ObjectStoreSource, PodSummary, ProvisioningRequest, VolumeClaim, VolumeTarget

PVC_PROTECTION_FINALIZER = "kubernetes.io/pvc-protection"


def _not_found(kind: str, namespace: str, name: str) -> ResourceNotFoundError:
    return ResourceNotFoundError(f"{kind} '{namespace}/{name}' not found", operation=f"get {kind}", status=404)


@dataclass
class FakeVolumeClaims:
    """In-memory PVC store; claims bind after ``pending_reads`` reads unless listed in ``never_bind``."""

    claims: dict[tuple[str, str], VolumeClaim] = field(default_factory=dict)
    created: list[Any] = field(default_factory=list)
    get_calls: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    patches: list[tuple[str, list[dict[str, Any]]]] = field(default_factory=list)
    pending_reads: int = 0
    never_bind: set[str] = field(default_factory=set)
    blocked_by_finalizer: set[str] = field(default_factory=set)
    create_errors: dict[str, Exception] = field(default_factory=dict)
    delete_errors: dict[str, Exception] = field(default_factory=dict)
    _reads: dict[str, int] = field(default_factory=dict)
    _terminating: set[str] = field(default_factory=set)

    def add(self, claim: VolumeClaim) -> None:
        self.claims[(claim.namespace, claim.name)] = claim

    def create(self, namespace: str, body: Any) -> VolumeClaim:
        name = body.metadata.name
        if name in self.create_errors:
            raise self.create_errors[name]
        if (namespace, name) in self.claims:
            raise ResourceConflictError(f"PVC '{namespace}/{name}' already exists", status=409)
        self.created.append(body)
        claim = volume_claim_from_api(
            _api_object(body, namespace=namespace, phase="Pending", finalizers=[PVC_PROTECTION_FINALIZER])
        )
        self.claims[(namespace, name)] = claim
        return claim

    def get(self, namespace: str, name: str) -> VolumeClaim:
        self.get_calls.append(name)
        claim = self.claims.get((namespace, name))
        if claim is None:
            raise _not_found("PVC", namespace, name)
        reads = self._reads.get(name, 0) + 1
        self._reads[name] = reads
        if claim.phase == "Pending" and name not in self.never_bind and reads > self.pending_reads:
            claim = replace(claim, phase=PHASE_BOUND, volume_name=f"pv-{name}", capacity="12Mi")
            self.claims[(namespace, name)] = claim
        return claim

    def delete(self, namespace: str, name: str) -> None:
        self.deleted.append(name)
        if name in self.delete_errors:
            raise self.delete_errors[name]
        if (namespace, name) not in self.claims:
            raise _not_found("PVC", namespace, name)
        if name in self.blocked_by_finalizer:
            self._terminating.add(name)
            return
        del self.claims[(namespace, name)]

    def patch(self, namespace: str, name: str, operations: list[dict[str, Any]]) -> None:
        self.patches.append((name, operations))
        claim = self.claims.get((namespace, name))
        if claim is None:
            raise _not_found("PVC", namespace, name)
        finalizers = claim.finalizers[1:]
        if not finalizers and name in self._terminating:
            del self.claims[(namespace, name)]
            return
        self.claims[(namespace, name)] = replace(claim, finalizers=finalizers)

    def list(self, namespace: str, label_selector: str) -> list[VolumeClaim]:
        return [claim for (claim_namespace, _), claim in self.claims.items() if claim_namespace == namespace]


@dataclass
class FakePods:
    pods: dict[tuple[str, str], list[PodSummary]] = field(default_factory=dict)
    deleted: list[str] = field(default_factory=list)
    list_error: Exception | None = None

    def add(self, namespace: str, job_name: str, pod: PodSummary) -> None:
        self.pods.setdefault((namespace, job_name), []).append(pod)

    def set_phase(self, namespace: str, job_name: str, phase: str) -> None:
        self.pods[(namespace, job_name)] = [
            PodSummary(name=pod.name, namespace=pod.namespace, phase=phase, created_at=pod.created_at)
            for pod in self.pods.get((namespace, job_name), [])
        ]

    def list(self, namespace: str, label_selector: str) -> list[PodSummary]:
        if self.list_error is not None:
            raise self.list_error
        job_name = label_selector.split("=", 1)[1]
        return list(self.pods.get((namespace, job_name), []))

    def delete(self, namespace: str, name: str) -> None:
        self.deleted.append(name)
        for key, pods in self.pods.items():
            self.pods[key] = [pod for pod in pods if pod.name != name]


@dataclass
class FakeJobs:
    """Jobs report successive states from ``script``; the last entry repeats."""

    pods: FakePods
    script: list[tuple[int, int, int]] = field(default_factory=lambda: [(1, 0, 0), (0, 1, 0)])
    created: list[Any] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    create_error: Exception | None = None
    delete_error: Exception | None = None
    jobs: dict[tuple[str, str], int] = field(default_factory=dict)

    def create(self, namespace: str, body: Any) -> CopyJob:
        if self.create_error is not None:
            raise self.create_error
        name = body.metadata.name
        self.created.append(body)
        self.jobs[(namespace, name)] = 0
        self.pods.add(
            namespace,
            name,
            PodSummary(name=f"{name}-x7k2p", namespace=namespace, phase="Running", created_at="2026-10-18T10:00:00+00:00"),
        )
        return CopyJob(name=name, namespace=namespace, active_count=1)

    def get(self, namespace: str, name: str) -> CopyJob:
        if (namespace, name) not in self.jobs:
            raise _not_found("Job", namespace, name)
        index = self.jobs[(namespace, name)]
        self.jobs[(namespace, name)] = index + 1
        active, succeeded, failed = self.script[min(index, len(self.script) - 1)]
        if succeeded:
            self.pods.set_phase(namespace, name, "Succeeded")
        elif failed:
            self.pods.set_phase(namespace, name, "Failed")
        return CopyJob(name=name, namespace=namespace, active_count=active, succeeded_count=succeeded, failed_count=failed)

    def delete(self, namespace: str, name: str) -> None:
        self.deleted.append(name)
        if self.delete_error is not None:
            raise self.delete_error
        if self.jobs.pop((namespace, name), None) is None:
            raise _not_found("Job", namespace, name)


@dataclass
class FakePersistentVolumes:
    patches: list[tuple[str, list[dict[str, Any]]]] = field(default_factory=list)

    def patch(self, name: str, operations: list[dict[str, Any]]) -> None:
        self.patches.append((name, operations))


@dataclass
class FakeCluster:
    volume_claims: FakeVolumeClaims
    jobs: FakeJobs
    pods: FakePods
    persistent_volumes: FakePersistentVolumes

    @property
    def gateway(self) -> ResourceGateway:
        return ResourceGateway(
            volume_claims=self.volume_claims,  # type: ignore[arg-type]
            jobs=self.jobs,  # type: ignore[arg-type]
            pods=self.pods,  # type: ignore[arg-type]
            persistent_volumes=self.persistent_volumes,  # type: ignore[arg-type]
        )


def _api_object(body: Any, *, namespace: str, phase: str, finalizers: list[str]) -> SimpleNamespace:
    """Server-side view of a created claim; the request body itself is left untouched."""
    return SimpleNamespace(
        metadata=SimpleNamespace(name=body.metadata.name, namespace=namespace, finalizers=list(finalizers)),
        spec=body.spec,
        status=SimpleNamespace(phase=phase, capacity=None),
    )


def s3_client_with_pages(pages: list[dict[str, Any] | Exception]) -> Mock:
    """S3 client mock whose paginator yields ``pages`` in order, raising any exception entries."""

    def _paginate(**_kwargs: Any) -> Iterator[dict[str, Any]]:
        for page in pages:
            if isinstance(page, Exception):
                raise page
            yield page

    paginator = Mock()
    paginator.paginate.side_effect = _paginate
    s3_client = Mock()
    s3_client.get_paginator.return_value = paginator
    return s3_client


def access_denied_error() -> ClientError:
    return ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
        "ListObjectsV2",
    )


def provisioning_request(*, name: str = "dataset", namespace: str = "ml") -> ProvisioningRequest:
    return ProvisioningRequest(
        source=ObjectStoreSource(
            endpoint="minio.storage:9000",
            use_tls=False,
            bucket="datasets",
            prefix="imagenet/train",
            access_key="AKIAEXAMPLE",
            secret_key="s3cr3t",
        ),
        target=VolumeTarget(namespace=namespace, name=name, storage_class="csi-clone"),
    )


@pytest.fixture
def cluster() -> FakeCluster:
    pods = FakePods()
    return FakeCluster(
        volume_claims=FakeVolumeClaims(),
        jobs=FakeJobs(pods=pods),
        pods=pods,
        persistent_volumes=FakePersistentVolumes(),
    )


@pytest.fixture
def resource_error() -> ResourceError:
    return ResourceError("Kubernetes call failed: API status 500 (Internal Server Error)", status=500)
