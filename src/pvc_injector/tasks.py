from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
import threading
from typing import Callable

import structlog

from .errors import ProvisioningError, error_message
from .metadata import ProvisioningHistoryStore
from .models import WORKFLOW_FAILED, WORKFLOW_SUCCEEDED, ProvisioningRequest, ProvisioningResult
from .orchestrator import ProvisioningOrchestrator, WorkflowStep


@dataclass(frozen=True)
class WorkflowOutcome:
    namespace: str
    name: str
    result: ProvisioningResult | None = None
    error: ProvisioningError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


CompletionCallback = Callable[[WorkflowOutcome], None]


class WorkflowRunner:
    """Runs provisioning workflows detached from the submitting caller.

    Every submission runs on its own thread. Outcomes are written to the
    history store (when configured) and passed to an optional completion
    callback. A submitted workflow cannot be cancelled.
    """

    def __init__(
        self,
        *,
        orchestrator: ProvisioningOrchestrator,
        logger: structlog.stdlib.BoundLogger,
        history_store: ProvisioningHistoryStore | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.history_store = history_store
        self.on_complete = on_complete
        self._log = logger.bind(component="workflow_runner")
        self._threads: set[threading.Thread] = set()
        self._lock = threading.Lock()

    def submit(self, request: ProvisioningRequest) -> Future[WorkflowOutcome]:
        target = request.target
        run_id = self._record_started(request)
        future: Future[WorkflowOutcome] = Future()
        future.set_running_or_notify_cancel()
        thread = threading.Thread(
            target=self._run_detached,
            args=(request, run_id, future),
            name=f"pvci-workflow-{target.namespace}-{target.name}",
            daemon=True,
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()
        self._log.info("workflow.submitted", namespace=target.namespace, name=target.name)
        return future

    def run(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Run a workflow on the caller's thread, recording it like a submitted one."""
        outcome = self._run(request, self._record_started(request))
        if outcome.error is not None:
            raise outcome.error
        if outcome.result is None:
            raise ProvisioningError("workflow finished without a result", step="unknown")
        return outcome.result

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        if not wait:
            return
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join(timeout)

    def _record_started(self, request: ProvisioningRequest) -> int | None:
        if self.history_store is None:
            return None
        target = request.target
        return self.history_store.record_started(namespace=target.namespace, name=target.name)

    def _run_detached(self, request: ProvisioningRequest, run_id: int | None, future: Future[WorkflowOutcome]) -> None:
        try:
            future.set_result(self._run(request, run_id))
        except Exception as error:  # pylint: disable=broad-except
            future.set_exception(error)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    def _run(self, request: ProvisioningRequest, run_id: int | None) -> WorkflowOutcome:
        target = request.target
        try:
            result = self.orchestrator.provision(request, on_step=lambda step: self._record_step(run_id, request, step))
            outcome = WorkflowOutcome(namespace=target.namespace, name=target.name, result=result)
        except ProvisioningError as error:
            outcome = WorkflowOutcome(namespace=target.namespace, name=target.name, error=error)
        except Exception as error:  # pylint: disable=broad-except
            self._log.exception("workflow.crashed", namespace=target.namespace, name=target.name)
            wrapped = ProvisioningError(f"unexpected workflow failure: {error_message(error)}", step="unknown")
            outcome = WorkflowOutcome(namespace=target.namespace, name=target.name, error=wrapped)

        self._record(run_id, outcome)
        if self.on_complete is not None:
            try:
                self.on_complete(outcome)
            except Exception:  # pylint: disable=broad-except
                self._log.exception("workflow.callback_failed", namespace=target.namespace, name=target.name)
        return outcome

    def _record_step(self, run_id: int | None, request: ProvisioningRequest, step: str) -> None:
        if self.history_store is None or run_id is None:
            return
        try:
            self.history_store.record_step(run_id, step)
        except Exception as error:  # pylint: disable=broad-except
            self._log.error(
                "workflow.history_write_failed",
                namespace=request.target.namespace,
                name=request.target.name,
                step=step,
                error=error_message(error),
            )

    def _record(self, run_id: int | None, outcome: WorkflowOutcome) -> None:
        if self.history_store is None or run_id is None:
            return
        if outcome.error is None:
            state, step, message = WORKFLOW_SUCCEEDED, WorkflowStep.DONE.value, ""
        else:
            state, step, message = WORKFLOW_FAILED, outcome.error.step, str(outcome.error)
        try:
            self.history_store.record_finished(run_id, state=state, step=step, message=message)
        except Exception as error:  # pylint: disable=broad-except
            self._log.error(
                "workflow.history_write_failed",
                namespace=outcome.namespace,
                name=outcome.name,
                error=error_message(error),
            )
