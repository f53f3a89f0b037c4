from __future__ import annotations

from pathlib import Path

from pvc_injector.app import (
    _AUTH_MODE_IN_CLUSTER,
    _AUTH_MODE_PASTE_KUBECONFIG,
    _AUTH_MODE_USE_KUBECONFIG_PATH,
    _actionable_next_step,
    _build_claim_rows,
    _build_history_rows,
    _build_status_rows,
    _build_workflow_rows,
    _default_auth_mode,
    _source_from_inputs,
    _validate_connection_inputs,
    _validate_source_inputs,
    _validate_target_inputs,
)
from pvc_injector.models import StatusReport, VolumeClaim


def _valid_kubeconfig_content() -> str:
    return """
apiVersion: v1
clusters:
  - name: dev
    cluster:
      server: https://example.invalid
contexts:
  - name: dev
    context:
      cluster: dev
      user: dev
users:
  - name: dev
    user:
      token: abc
current-context: dev
"""


def test_actionable_next_step_with_sizing_failure_points_at_object_store_settings() -> None:
    message = _actionable_next_step("sizing", "unable to list objects in 'datasets/train': AccessDenied")

    assert message.startswith("unable to list objects")
    assert "credentials, bucket and prefix" in message


def test_actionable_next_step_with_unknown_step_falls_back_to_generic_hint() -> None:
    message = _actionable_next_step("unknown", "unexpected workflow failure: KeyError")

    assert message.endswith("Inspect Kubernetes events and service logs for more detail.")


def test_actionable_next_step_with_empty_message_requires_no_action() -> None:
    assert _actionable_next_step("sizing", "  ") == "No follow-up action required."


def test_build_history_rows_with_each_state_sets_expected_actionable_messages() -> None:
    rows = _build_history_rows(
        [
            {"namespace": "ml", "name": "a", "state": "succeeded", "step": "done", "message": "", "started_at": "t1"},
            {
                "namespace": "ml",
                "name": "b",
                "state": "failed",
                "step": "validating",
                "message": "PVC 'ml/b' already exists",
                "started_at": "t2",
                "finished_at": "t3",
            },
            {"namespace": "ml", "name": "c", "state": "running", "step": "validating", "message": None},
        ]
    )

    assert rows[0]["actionable_message"] == "Volume provisioned successfully."
    assert "Pick another name" in rows[1]["actionable_message"]
    assert rows[1]["finished_at"] == "t3"
    assert rows[2]["actionable_message"] == "Workflow in progress."
    assert rows[2]["message"] == ""


def test_build_claim_rows_sorts_claims_and_fills_defaults() -> None:
    rows = _build_claim_rows(
        [
            VolumeClaim(name="zeta", namespace="ml", phase="Bound", access_modes=("ReadOnlyMany",), clone_source="zeta-src"),
            VolumeClaim(name="alpha", namespace="ml", phase="Pending"),
        ]
    )

    assert [row["claim"] for row in rows] == ["alpha", "zeta"]
    assert rows[0]["capacity"] == "unknown"
    assert rows[0]["storage_class"] == "default"
    assert rows[1]["access_modes"] == "ReadOnlyMany"
    assert rows[1]["clone_source"] == "zeta-src"


def test_build_status_rows_hides_errors_for_healthy_resources() -> None:
    rows = _build_status_rows(
        StatusReport(
            job_has_error=True,
            job_error="no injectors found",
            claim_name="dataset",
            claim_phase="Bound",
            claim_error="stale",
        )
    )

    assert rows[0] == {"resource": "copy job", "state": "unknown", "error": "no injectors found"}
    assert rows[1] == {"resource": "claim dataset", "state": "Bound", "error": ""}
    assert rows[2]["state"] == "not recorded"


def test_build_workflow_rows_before_connecting_blocks_later_steps() -> None:
    rows = _build_workflow_rows(connected=False, sized=False, submitted_count=0, status_checked=False)

    assert [row["state"] for row in rows] == ["Ready", "Waiting", "Waiting", "Waiting"]


def test_build_workflow_rows_with_submission_and_status_marks_steps_done() -> None:
    rows = _build_workflow_rows(connected=True, sized=True, submitted_count=2, status_checked=True)

    assert [row["state"] for row in rows] == ["Done", "Done", "Done", "Done"]


def test_validate_source_inputs_with_scheme_in_endpoint_returns_error() -> None:
    errors = _validate_source_inputs(endpoint_input="https://minio.storage:9000", bucket_input="")

    assert errors == [
        "Object store endpoint must be host[:port] without a scheme; use the TLS toggle instead.",
        "Bucket is required.",
    ]


def test_validate_target_inputs_with_long_name_returns_error() -> None:
    errors = _validate_target_inputs(namespace_input="ml", name_input="d" * 55)

    assert errors == ["Target volume name must be at most 54 characters."]


def test_source_from_inputs_strips_everything_but_secret() -> None:
    source = _source_from_inputs(
        endpoint_input=" minio.storage:9000 ",
        use_tls=True,
        bucket_input=" datasets ",
        prefix_input=" imagenet/train ",
        access_key_input=" AKIAEXAMPLE ",
        secret_key_input=" s3cr3t ",
    )

    assert source.origin == "minio.storage:9000/datasets/imagenet/train"
    assert source.scheme == "https"
    assert source.access_key == "AKIAEXAMPLE"
    assert source.secret_key == " s3cr3t "


def test_validate_connection_inputs_with_pasted_mode_and_missing_content_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert error == "Paste kubeconfig content before connecting."


def test_validate_connection_inputs_with_existing_kubeconfig_path_returns_none(tmp_path: Path) -> None:
    kubeconfig_path = tmp_path / "config"
    kubeconfig_path.write_text(_valid_kubeconfig_content())

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(kubeconfig_path),
        kubeconfig_text_input="",
    )

    assert error is None


def test_validate_connection_inputs_with_kubeconfig_path_directory_returns_error(tmp_path: Path) -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_USE_KUBECONFIG_PATH,
        kubeconfig_path_input=str(tmp_path),
        kubeconfig_text_input="",
    )

    assert error == f"Kubeconfig path must point to an existing file: {tmp_path}"


def test_validate_connection_inputs_with_pasted_missing_contexts_returns_error() -> None:
    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_PASTE_KUBECONFIG,
        kubeconfig_path_input="",
        kubeconfig_text_input="""
apiVersion: v1
clusters: []
users: []
""",
    )

    assert error == "Pasted kubeconfig is missing required field(s): contexts."


def test_validate_connection_inputs_with_incluster_mode_without_pod_environment_returns_error(monkeypatch) -> None:
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("pvc_injector.app.Path.exists", lambda self: False)

    error = _validate_connection_inputs(
        auth_mode=_AUTH_MODE_IN_CLUSTER,
        kubeconfig_path_input="",
        kubeconfig_text_input="",
    )

    assert "In-cluster service account mode requires Kubernetes pod environment variables" in str(error)


def test_default_auth_mode_prefers_env_override_then_incluster_detection(monkeypatch) -> None:
    monkeypatch.delenv("PVCI_DEFAULT_AUTH_MODE", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    monkeypatch.setattr("pvc_injector.app.Path.exists", lambda self: False)
    assert _default_auth_mode() == _AUTH_MODE_USE_KUBECONFIG_PATH

    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.96.0.1")
    monkeypatch.setattr(
        "pvc_injector.app.Path.exists",
        lambda self: str(self) == "/var/run/secrets/kubernetes.io/serviceaccount/token",
    )
    assert _default_auth_mode() == _AUTH_MODE_IN_CLUSTER

    monkeypatch.setenv("PVCI_DEFAULT_AUTH_MODE", "paste")
    assert _default_auth_mode() == _AUTH_MODE_PASTE_KUBECONFIG
