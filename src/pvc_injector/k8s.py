from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.utils import parse_quantity

from .errors import ResourceConflictError, ResourceError, ResourceNotFoundError
from .models import CopyJob, PodSummary, VolumeClaim

UNKNOWN_PHASE = "Unknown"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "pvci"
T = TypeVar("T")

PatchOperations = list[dict[str, Any]]


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
    )


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


class VolumeClaimGateway:
    def __init__(self, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def create(self, namespace: str, body: client.V1PersistentVolumeClaim) -> VolumeClaim:
        name = body.metadata.name if body.metadata else ""
        created = _call_kubernetes(
            operation=f"create PVC '{namespace}/{name}'",
            func=lambda: self.core_api.create_namespaced_persistent_volume_claim(namespace=namespace, body=body),
        )
        return volume_claim_from_api(created)

    def get(self, namespace: str, name: str) -> VolumeClaim:
        pvc = _call_kubernetes(
            operation=f"get PVC '{namespace}/{name}'",
            func=lambda: self.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )
        return volume_claim_from_api(pvc)

    def delete(self, namespace: str, name: str) -> None:
        _call_kubernetes(
            operation=f"delete PVC '{namespace}/{name}'",
            func=lambda: self.core_api.delete_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )

    def patch(self, namespace: str, name: str, operations: PatchOperations) -> None:
        # A list body makes the client send application/json-patch+json.
        _call_kubernetes(
            operation=f"patch PVC '{namespace}/{name}'",
            func=lambda: self.core_api.patch_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=operations,
            ),
        )

    def list(self, namespace: str, label_selector: str) -> list[VolumeClaim]:
        response = _call_kubernetes(
            operation=f"list PVCs in namespace '{namespace}'",
            func=lambda: self.core_api.list_namespaced_persistent_volume_claim(
                namespace=namespace,
                label_selector=label_selector,
            ),
        )
        return [volume_claim_from_api(item) for item in response.items or []]


class JobGateway:
    def __init__(self, batch_api: client.BatchV1Api) -> None:
        self.batch_api = batch_api

    def create(self, namespace: str, body: client.V1Job) -> CopyJob:
        name = body.metadata.name if body.metadata else ""
        created = _call_kubernetes(
            operation=f"create Job '{namespace}/{name}'",
            func=lambda: self.batch_api.create_namespaced_job(namespace=namespace, body=body),
        )
        return copy_job_from_api(created)

    def get(self, namespace: str, name: str) -> CopyJob:
        job = _call_kubernetes(
            operation=f"get Job '{namespace}/{name}'",
            func=lambda: self.batch_api.read_namespaced_job(name=name, namespace=namespace),
        )
        return copy_job_from_api(job)

    def delete(self, namespace: str, name: str) -> None:
        # Orphan the pods so their terminal phase remains visible to status queries.
        _call_kubernetes(
            operation=f"delete Job '{namespace}/{name}'",
            func=lambda: self.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Orphan"),
            ),
        )


class PodGateway:
    def __init__(self, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def list(self, namespace: str, label_selector: str) -> list[PodSummary]:
        response = _call_kubernetes(
            operation=f"list Pods in namespace '{namespace}' ({label_selector})",
            func=lambda: self.core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector),
        )
        return [pod_summary_from_api(item) for item in response.items or []]

    def delete(self, namespace: str, name: str) -> None:
        _call_kubernetes(
            operation=f"delete Pod '{namespace}/{name}'",
            func=lambda: self.core_api.delete_namespaced_pod(name=name, namespace=namespace),
        )


class PersistentVolumeGateway:
    def __init__(self, core_api: client.CoreV1Api) -> None:
        self.core_api = core_api

    def patch(self, name: str, operations: PatchOperations) -> None:
        _call_kubernetes(
            operation=f"patch PV '{name}'",
            func=lambda: self.core_api.patch_persistent_volume(name=name, body=operations),
        )


@dataclass(frozen=True)
class ResourceGateway:
    volume_claims: VolumeClaimGateway
    jobs: JobGateway
    pods: PodGateway
    persistent_volumes: PersistentVolumeGateway


def build_resource_gateway(clients: KubernetesClients) -> ResourceGateway:
    return ResourceGateway(
        volume_claims=VolumeClaimGateway(clients.core_api),
        jobs=JobGateway(clients.batch_api),
        pods=PodGateway(clients.core_api),
        persistent_volumes=PersistentVolumeGateway(clients.core_api),
    )


def volume_claim_from_api(pvc: Any) -> VolumeClaim:
    metadata = pvc.metadata
    spec = pvc.spec
    status = pvc.status

    requested: int | None = None
    if spec and spec.resources and spec.resources.requests:
        storage = spec.resources.requests.get("storage")
        if storage is not None:
            requested = int(parse_quantity(storage))

    data_source = spec.data_source if spec else None
    capacity = None
    if status and status.capacity:
        capacity = status.capacity.get("storage")

    return VolumeClaim(
        name=metadata.name or "",
        namespace=metadata.namespace or "",
        phase=status.phase if status and status.phase else UNKNOWN_PHASE,
        access_modes=tuple(spec.access_modes or ()) if spec else (),
        requested_capacity_bytes=requested,
        clone_source=data_source.name if data_source else None,
        finalizers=tuple(metadata.finalizers or ()),
        volume_name=spec.volume_name if spec else None,
        storage_class=spec.storage_class_name if spec else None,
        capacity=capacity,
    )


def copy_job_from_api(job: Any) -> CopyJob:
    status = job.status
    return CopyJob(
        name=job.metadata.name or "",
        namespace=job.metadata.namespace or "",
        active_count=(status.active or 0) if status else 0,
        succeeded_count=(status.succeeded or 0) if status else 0,
        failed_count=(status.failed or 0) if status else 0,
    )


def pod_summary_from_api(pod: Any) -> PodSummary:
    metadata = pod.metadata
    created = metadata.creation_timestamp if metadata else None
    return PodSummary(
        name=(metadata.name or "") if metadata else "",
        namespace=(metadata.namespace or "") if metadata else "",
        phase=pod.status.phase if pod.status and pod.status.phase else UNKNOWN_PHASE,
        created_at=created.isoformat() if created is not None else None,
    )


def _call_kubernetes(*, operation: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        message = _format_api_exception_message(operation=operation, error=error)
        if error.status == 404:
            raise ResourceNotFoundError(message, operation=operation, status=404) from error
        if error.status == 409:
            raise ResourceConflictError(message, operation=operation, status=409) from error
        raise ResourceError(message, operation=operation, status=error.status) from error
    except Exception as error:
        raise ResourceError(
            f"Kubernetes call failed while trying to {operation}: {error}",
            operation=operation,
        ) from error


def _format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
