from __future__ import annotations

import structlog

from .errors import ResourceError, ResourceNotFoundError, error_message
from .k8s import ResourceGateway
from .metadata import ProvisioningHistoryStore
from .models import PodSummary, StatusReport, VolumeClaim, VolumeTarget

NO_INJECTORS_MESSAGE = "no injectors found"


class StatusReporter:
    """Read-only view of a provisioning target.

    Missing resources are reported inside the :class:`StatusReport` rather than
    raised, because a target may be queried before, during or after its copy.
    """

    def __init__(
        self,
        *,
        gateway: ResourceGateway,
        logger: structlog.stdlib.BoundLogger,
        history_store: ProvisioningHistoryStore | None = None,
    ) -> None:
        self.gateway = gateway
        self.history_store = history_store
        self._log = logger.bind(component="status")

    def status(self, namespace: str, name: str) -> StatusReport:
        target = VolumeTarget(namespace=namespace, name=name)
        job_fields = self._job_fields(target)
        claim_fields = self._claim_fields(target)
        workflow_fields = self._workflow_fields(target)
        return StatusReport(**job_fields, **claim_fields, **workflow_fields)

    def _job_fields(self, target: VolumeTarget) -> dict[str, object]:
        try:
            pods = self.gateway.pods.list(target.namespace, f"job-name={target.job_name}")
        except ResourceError as error:
            self._log.warning("status.pods.list_failed", namespace=target.namespace, name=target.name, error=str(error))
            return {"job_has_error": True, "job_error": str(error), "job_phase": ""}

        if not pods:
            return {"job_has_error": True, "job_error": NO_INJECTORS_MESSAGE, "job_phase": ""}
        return {"job_has_error": False, "job_error": "", "job_phase": _latest_pod(pods).phase}

    def _claim_fields(self, target: VolumeTarget) -> dict[str, object]:
        claim: VolumeClaim | None = None
        last_error = ""
        for claim_name in (target.name, target.staging_name):
            try:
                claim = self.gateway.volume_claims.get(target.namespace, claim_name)
                break
            except ResourceNotFoundError as error:
                last_error = str(error)
            except ResourceError as error:
                self._log.warning(
                    "status.claim.read_failed",
                    namespace=target.namespace,
                    claim=claim_name,
                    error=str(error),
                )
                last_error = str(error)
                break

        if claim is None:
            return {
                "claim_has_error": True,
                "claim_error": last_error,
                "claim_name": "",
                "claim_phase": "",
                "claim_capacity": "",
            }
        return {
            "claim_has_error": False,
            "claim_error": "",
            "claim_name": claim.name,
            "claim_phase": claim.phase,
            "claim_capacity": claim.capacity or "",
        }

    def _workflow_fields(self, target: VolumeTarget) -> dict[str, object]:
        if self.history_store is None:
            return {}
        try:
            record = self.history_store.get_latest(target.namespace, target.name)
        except Exception as error:  # pylint: disable=broad-except
            return {"workflow_error": f"workflow history unavailable: {error_message(error)}"}

        if record is None:
            return {}
        return {
            "workflow_state": record.state,
            "workflow_step": record.step,
            "workflow_error": record.message,
        }


def _latest_pod(pods: list[PodSummary]) -> PodSummary:
    return max(pods, key=lambda pod: (pod.created_at or "", pod.name))
