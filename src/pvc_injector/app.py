from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from pvc_injector.config import AppConfig, ensure_directories
from pvc_injector.errors import ProvisioningError
from pvc_injector.k8s import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    list_context_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from pvc_injector.log import configure_logging, get_logger
from pvc_injector.metadata import ProvisioningHistoryStore
from pvc_injector.models import (
    WORKFLOW_FAILED,
    WORKFLOW_SUCCEEDED,
    ObjectStoreSource,
    ProvisioningRequest,
    StatusReport,
    VolumeClaim,
    VolumeTarget,
)
from pvc_injector.services import Services, build_services

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_STEP_HINTS: tuple[tuple[str, str], ...] = (
    ("validating", "Pick another name or delete the existing claim with the same name or '-src' suffix."),
    ("sizing", "Check the object store endpoint, TLS setting, credentials, bucket and prefix."),
    ("staging_created", "Verify the storage class exists and RBAC allows PVC creation."),
    ("staging_bound", "Inspect PVC events; the staging claim was left in place and may need manual removal."),
    ("copy_job_created", "Verify RBAC allows Job creation in the namespace."),
    ("copy_job_succeeded", "Inspect the injector pod logs; the copy failed or ran past its estimated time."),
    ("final_claim_created", "Confirm the storage driver supports PVC cloning; the staging claim was left in place."),
    ("final_claim_bound", "Inspect events of the final claim and the CSI driver clone status."),
)


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "services": None,
        "last_size": None,
        "last_status": None,
        "managed_claims": [],
        "submitted_targets": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(step: str, message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for step_name, hint in _STEP_HINTS:
        if step == step_name:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect Kubernetes events and service logs for more detail."


def _build_history_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    rendered_rows: list[dict[str, str]] = []
    for row in rows:
        state = str(row.get("state", ""))
        step = str(row.get("step", ""))
        message = str(row.get("message", "") or "")
        if state == WORKFLOW_SUCCEEDED:
            actionable_message = "Volume provisioned successfully."
        elif state == WORKFLOW_FAILED:
            actionable_message = _actionable_next_step(step, message)
        else:
            actionable_message = "Workflow in progress."

        rendered_rows.append(
            {
                "namespace": str(row.get("namespace", "")),
                "name": str(row.get("name", "")),
                "state": state,
                "step": step,
                "started_at": str(row.get("started_at", "")),
                "finished_at": str(row.get("finished_at", "") or ""),
                "message": message,
                "actionable_message": actionable_message,
            }
        )
    return rendered_rows


def _build_claim_rows(claims: list[VolumeClaim]) -> list[dict[str, str]]:
    return [
        {
            "namespace": claim.namespace,
            "claim": claim.name,
            "phase": claim.phase,
            "capacity": claim.capacity or "unknown",
            "storage_class": claim.storage_class or "default",
            "access_modes": ",".join(claim.access_modes),
            "clone_source": claim.clone_source or "",
        }
        for claim in sorted(claims, key=lambda item: (item.namespace, item.name))
    ]


def _build_status_rows(report: StatusReport) -> list[dict[str, str]]:
    return [
        {
            "resource": "copy job",
            "state": report.job_phase or "unknown",
            "error": report.job_error if report.job_has_error else "",
        },
        {
            "resource": f"claim {report.claim_name}".strip(),
            "state": report.claim_phase or "unknown",
            "error": report.claim_error if report.claim_has_error else "",
        },
        {
            "resource": "workflow",
            "state": report.workflow_state or "not recorded",
            "error": report.workflow_error,
        },
    ]


def _build_workflow_rows(
    *,
    connected: bool,
    sized: bool,
    submitted_count: int,
    status_checked: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    size_state = "done" if sized else ("active" if connected else "blocked")
    provision_state = "done" if submitted_count > 0 else ("active" if connected else "blocked")
    monitor_state = "done" if status_checked else ("active" if submitted_count > 0 else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster from the sidebar.",
        },
        {
            "step": "2. Size",
            "state": _WORKFLOW_STATE_LABELS[size_state],
            "description": "Count objects and bytes under the source bucket/prefix.",
        },
        {
            "step": "3. Provision",
            "state": _WORKFLOW_STATE_LABELS[provision_state],
            "description": "Submit a volume request; it runs in the background.",
        },
        {
            "step": "4. Monitor",
            "state": _WORKFLOW_STATE_LABELS[monitor_state],
            "description": "Poll copy job, claim and workflow status.",
        },
    ]


def _validate_source_inputs(*, endpoint_input: str, bucket_input: str) -> list[str]:
    errors: list[str] = []
    if not endpoint_input.strip():
        errors.append("Object store endpoint (host:port) is required.")
    elif "://" in endpoint_input:
        errors.append("Object store endpoint must be host[:port] without a scheme; use the TLS toggle instead.")
    if not bucket_input.strip():
        errors.append("Bucket is required.")
    return errors


def _validate_target_inputs(*, namespace_input: str, name_input: str) -> list[str]:
    errors: list[str] = []
    if not namespace_input.strip():
        errors.append("Target namespace is required.")
    if not name_input.strip():
        errors.append("Target volume name is required.")
    elif len(name_input.strip()) > 54:
        errors.append("Target volume name must be at most 54 characters.")
    return errors


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(kubeconfig_content=kubeconfig_text, source_label="Pasted kubeconfig")

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("PVCI_DEFAULT_AUTH_MODE", "").strip().lower()
    if configured_default in {"kubeconfig", "kubeconfig_path", "path"}:
        return _AUTH_MODE_USE_KUBECONFIG_PATH
    if configured_default in {"paste", "pasted", "kubeconfig_text"}:
        return _AUTH_MODE_PASTE_KUBECONFIG
    if configured_default in {"in-cluster", "in_cluster", "serviceaccount", "service-account"}:
        return _AUTH_MODE_IN_CLUSTER

    if _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER

    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to an existing file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error.__class__.__name__}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    missing_fields = [field for field in ("apiVersion", "clusters", "contexts", "users") if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _source_from_inputs(
    *,
    endpoint_input: str,
    use_tls: bool,
    bucket_input: str,
    prefix_input: str,
    access_key_input: str,
    secret_key_input: str,
) -> ObjectStoreSource:
    return ObjectStoreSource(
        endpoint=endpoint_input.strip(),
        use_tls=use_tls,
        bucket=bucket_input.strip(),
        prefix=prefix_input.strip(),
        access_key=access_key_input.strip(),
        secret_key=secret_key_input,
    )


def _connect(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str, context: str, config: AppConfig) -> None:
    kubeconfig_path: str | None = None
    in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

    clients = load_kubernetes_clients(kubeconfig_path=kubeconfig_path, context=context or None, in_cluster=in_cluster)
    st.session_state.connected = True
    st.session_state.services = build_services(config=config, clients=clients, logger=get_logger(config.service))
    st.session_state.connection = {
        "auth_mode": auth_mode,
        "kubeconfig_path": kubeconfig_path,
        "context": context or None,
        "in_cluster": in_cluster,
    }


def _disconnect() -> None:
    services: Services | None = st.session_state.services
    if services is not None:
        services.runner.shutdown(wait=False)
    st.session_state.connected = False
    st.session_state.services = None
    st.session_state.connection = {}
    st.session_state.managed_claims = []
    st.session_state.last_status = None


def main() -> None:
    st.set_page_config(page_title="PVC Injector", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    ensure_directories(base_config)
    configure_logging(level=base_config.log_level, json_output=base_config.log_format == "json")

    st.title("PVC Injector")
    st.caption("Provision read-only volumes pre-populated from S3/MinIO objects and follow their progress.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.services is not None),
            sized=st.session_state.last_size is not None,
            submitted_count=len(st.session_state.submitted_targets),
            status_checked=st.session_state.last_status is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio("Authentication", options=auth_options, index=auth_options.index(_default_auth_mode()))

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    context = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
        try:
            context_options = [""] + list_context_names(kubeconfig_path_input)
        except Exception:  # pylint: disable=broad-except
            context_options = [""]
        context = st.sidebar.selectbox("Kubernetes context (optional)", options=context_options, index=0)
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)
        context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                _connect(
                    auth_mode=auth_mode,
                    kubeconfig_path_input=kubeconfig_path_input,
                    kubeconfig_text_input=kubeconfig_text_input,
                    context=context,
                    config=base_config,
                )
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                _disconnect()
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        _disconnect()

    if not st.session_state.connected or st.session_state.services is None:
        st.info("Connect to a cluster from the sidebar to size sources and provision volumes.")
        return

    services: Services = st.session_state.services

    st.subheader("Object Store Source")
    source_columns = st.columns(2)
    endpoint_input = source_columns[0].text_input("Endpoint (host:port)", value="")
    use_tls = source_columns[1].checkbox("Use TLS", value=False)
    bucket_input = source_columns[0].text_input("Bucket", value="")
    prefix_input = source_columns[1].text_input("Prefix", value="")
    access_key_input = source_columns[0].text_input("Access key", value="")
    secret_key_input = source_columns[1].text_input("Secret key", value="", type="password")

    source_errors = _validate_source_inputs(endpoint_input=endpoint_input, bucket_input=bucket_input)
    source = _source_from_inputs(
        endpoint_input=endpoint_input,
        use_tls=use_tls,
        bucket_input=bucket_input,
        prefix_input=prefix_input,
        access_key_input=access_key_input,
        secret_key_input=secret_key_input,
    )

    if st.button("Check source size"):
        if source_errors:
            for error in source_errors:
                st.error(error)
        else:
            with st.spinner(f"Listing objects under {source.object_path}..."):
                try:
                    st.session_state.last_size = services.size_estimator.summarize(source)
                except ProvisioningError as error:
                    st.error(str(error))

    if st.session_state.last_size is not None:
        size_columns = st.columns(2)
        size_columns[0].metric("Objects", st.session_state.last_size.object_count)
        size_columns[1].metric("Bytes", st.session_state.last_size.total_bytes)

    st.subheader("Target Volume")
    target_columns = st.columns(3)
    namespace_input = target_columns[0].text_input("Namespace", value="default")
    name_input = target_columns[1].text_input("Volume name", value="")
    storage_class_input = target_columns[2].text_input("Storage class (optional)", value="")

    if st.button("Provision volume", type="primary"):
        errors = source_errors + _validate_target_inputs(namespace_input=namespace_input, name_input=name_input)
        if errors:
            for error in errors:
                st.error(error)
        else:
            target = VolumeTarget(
                namespace=namespace_input.strip(),
                name=name_input.strip(),
                storage_class=storage_class_input.strip(),
            )
            services.runner.submit(ProvisioningRequest(source=source, target=target))
            st.session_state.submitted_targets.append((target.namespace, target.name))
            st.success(f"Provisioning of {target.namespace}/{target.name} started in the background.")

    st.subheader("Status")
    if st.button("Refresh status"):
        if _validate_target_inputs(namespace_input=namespace_input, name_input=name_input):
            st.warning("Enter the namespace and volume name to query.")
        else:
            st.session_state.last_status = services.status_reporter.status(namespace_input.strip(), name_input.strip())

    if st.session_state.last_status is not None:
        st.dataframe(_build_status_rows(st.session_state.last_status), use_container_width=True, hide_index=True)

    st.subheader("Managed Volumes")
    if st.button("Refresh managed volumes"):
        try:
            st.session_state.managed_claims = services.status_reporter.gateway.volume_claims.list(
                namespace_input.strip() or "default",
                f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}",
            )
        except ProvisioningError as error:
            st.error(str(error))
    if st.session_state.managed_claims:
        st.dataframe(_build_claim_rows(st.session_state.managed_claims), use_container_width=True, hide_index=True)

    st.subheader("Recent Workflow History")
    history_store = ProvisioningHistoryStore(base_config.history_db_path)
    history_store.initialize()
    history_rows = _build_history_rows(history_store.get_recent_records(limit=100))
    if history_rows:
        st.dataframe(history_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No workflow history yet. Provision a volume to populate this table.")


if __name__ == "__main__":
    main()
