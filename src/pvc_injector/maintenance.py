from __future__ import annotations

import structlog

from .errors import ResourceError, ResourceNotFoundError
from .k8s import ResourceGateway
from .models import VolumeTarget

READ_ONLY_MANY = ("ReadOnlyMany",)
READ_WRITE_ONCE = ("ReadWriteOnce",)


class VolumeMaintenance:
    """Day-two operations on claims and copy jobs created by the service."""

    def __init__(self, *, gateway: ResourceGateway, logger: structlog.stdlib.BoundLogger) -> None:
        self.gateway = gateway
        self._log = logger.bind(component="maintenance")

    def delete_claim(self, namespace: str, name: str) -> None:
        self.gateway.volume_claims.delete(namespace, name)
        self._log.info("maintenance.pvc.deleted", namespace=namespace, claim=name)

    def cleanup(self, namespace: str, name: str) -> None:
        """Remove the copy job and its pods; pod deletion failures are raised together."""
        target = VolumeTarget(namespace=namespace, name=name)
        try:
            self.gateway.jobs.delete(namespace, target.job_name)
        except ResourceNotFoundError:
            pass
        except ResourceError as error:
            self._log.error("maintenance.job.delete_failed", namespace=namespace, job=target.job_name, error=str(error))

        messages: list[str] = []
        try:
            pods = self.gateway.pods.list(namespace, f"job-name={target.job_name}")
        except ResourceError as error:
            self._log.warning("maintenance.pods.list_failed", namespace=namespace, job=target.job_name, error=str(error))
            messages.append(str(error))
            pods = []

        for pod in pods:
            try:
                self.gateway.pods.delete(namespace, pod.name)
            except ResourceNotFoundError:
                continue
            except ResourceError as error:
                self._log.error("maintenance.pod.delete_failed", namespace=namespace, pod=pod.name, error=str(error))
                messages.append(str(error))

        if messages:
            raise ResourceError(" ".join(messages), operation=f"cleanup '{namespace}/{name}'")
        self._log.info("maintenance.cleanup.done", namespace=namespace, job=target.job_name, pods=len(pods))

    def set_access_modes(self, namespace: str, name: str, modes: tuple[str, ...]) -> None:
        """Set access modes on the persistent volume bound to a claim."""
        claim = self.gateway.volume_claims.get(namespace, name)
        if not claim.volume_name:
            raise ResourceError(
                f"PVC '{namespace}/{name}' is not bound to a persistent volume",
                operation=f"set access modes on '{namespace}/{name}'",
            )

        self._log.info("maintenance.mode.set", namespace=namespace, claim=name, volume=claim.volume_name, modes=list(modes))
        self.gateway.persistent_volumes.patch(
            claim.volume_name,
            [{"op": "add", "path": "/spec/accessModes", "value": list(modes)}],
        )
