from __future__ import annotations

import pytest
import structlog

from conftest import FakeCluster
from pvc_injector.errors import ResourceError, ResourceNotFoundError
from pvc_injector.maintenance import READ_ONLY_MANY, READ_WRITE_ONCE, VolumeMaintenance
from pvc_injector.models import PodSummary, VolumeClaim


def _maintenance(cluster: FakeCluster) -> VolumeMaintenance:
    return VolumeMaintenance(gateway=cluster.gateway, logger=structlog.get_logger("test"))


def _add_injector_pods(cluster: FakeCluster, *names: str) -> None:
    for name in names:
        cluster.pods.add("ml", "dataset-injector", PodSummary(name=name, namespace="ml", phase="Failed"))


def test_delete_claim_removes_named_claim(cluster: FakeCluster) -> None:
    cluster.volume_claims.add(VolumeClaim(name="dataset", namespace="ml", phase="Bound"))

    _maintenance(cluster).delete_claim("ml", "dataset")

    assert ("ml", "dataset") not in cluster.volume_claims.claims


def test_delete_claim_with_missing_claim_raises_not_found(cluster: FakeCluster) -> None:
    with pytest.raises(ResourceNotFoundError):
        _maintenance(cluster).delete_claim("ml", "dataset")


def test_cleanup_with_missing_job_still_deletes_injector_pods(cluster: FakeCluster) -> None:
    _add_injector_pods(cluster, "dataset-injector-a", "dataset-injector-b")

    _maintenance(cluster).cleanup("ml", "dataset")

    assert cluster.jobs.deleted == ["dataset-injector"]
    assert cluster.pods.deleted == ["dataset-injector-a", "dataset-injector-b"]
    assert cluster.pods.list("ml", "job-name=dataset-injector") == []


def test_cleanup_with_job_delete_failure_continues_with_pods(cluster: FakeCluster, resource_error: ResourceError) -> None:
    cluster.jobs.delete_error = resource_error
    _add_injector_pods(cluster, "dataset-injector-a")

    _maintenance(cluster).cleanup("ml", "dataset")

    assert cluster.pods.deleted == ["dataset-injector-a"]


def test_cleanup_with_pod_listing_failure_raises_resource_error(
    cluster: FakeCluster,
    resource_error: ResourceError,
) -> None:
    cluster.pods.list_error = resource_error

    with pytest.raises(ResourceError, match="API status 500"):
        _maintenance(cluster).cleanup("ml", "dataset")


def test_set_access_modes_patches_bound_persistent_volume(cluster: FakeCluster) -> None:
    cluster.volume_claims.add(VolumeClaim(name="dataset", namespace="ml", phase="Bound", volume_name="pv-dataset"))
    maintenance = _maintenance(cluster)

    maintenance.set_access_modes("ml", "dataset", READ_ONLY_MANY)
    maintenance.set_access_modes("ml", "dataset", READ_WRITE_ONCE)

    assert cluster.persistent_volumes.patches == [
        ("pv-dataset", [{"op": "add", "path": "/spec/accessModes", "value": ["ReadOnlyMany"]}]),
        ("pv-dataset", [{"op": "add", "path": "/spec/accessModes", "value": ["ReadWriteOnce"]}]),
    ]


def test_set_access_modes_with_unbound_claim_raises_resource_error(cluster: FakeCluster) -> None:
    cluster.volume_claims.add(VolumeClaim(name="dataset", namespace="ml", phase="Pending"))
    cluster.volume_claims.never_bind.add("dataset")

    with pytest.raises(ResourceError, match="not bound to a persistent volume"):
        _maintenance(cluster).set_access_modes("ml", "dataset", READ_ONLY_MANY)

    assert cluster.persistent_volumes.patches == []
