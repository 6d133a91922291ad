from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import os

import streamlit as st
import yaml

from velero_pvc_restore.config import RestoreConfig
from velero_pvc_restore.k8s import (
    ClusterGateway,
    KubernetesAuthenticationError,
    list_context_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from velero_pvc_restore.models import DELETION_ORDER, BackupSummary, TeardownPlan, TeardownResult
from velero_pvc_restore.orchestrator import (
    RestoreCoordinator,
    RestoreOptions,
    RestoreOutcome,
    RestoreValidationError,
    validate_options,
)
from velero_pvc_restore.velero import VeleroClient, VeleroError

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_SCOPE_ALL_LABEL = "All namespaces in backup"
_SCOPE_NAMESPACE_LABEL = "Single namespace"
_SCOPE_CLAIM_LABEL = "Single PVC"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "connection": {},
        "clients": None,
        "backups": [],
        "planned_options": None,
        "plans": [],
        "plan_log": [],
        "last_outcome": None,
        "last_log": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_backup_rows(backups: list[BackupSummary]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for backup in backups:
        items = ""
        if backup.total_items is not None:
            items = f"{backup.items_backed_up or 0}/{backup.total_items}"
        rows.append(
            {
                "name": backup.name,
                "phase": backup.phase,
                "created": backup.created_at or "unknown",
                "expires": backup.expires_at or "never",
                "namespaces": ",".join(backup.included_namespaces) or "*",
                "storage_location": backup.storage_location or "default",
                "items": items,
                "errors": str(backup.errors),
                "warnings": str(backup.warnings),
            }
        )
    return rows


def _build_plan_rows(plans: list[TeardownPlan]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for plan in plans:
        owners = [f"{kind.value}/{name}" for kind in DELETION_ORDER for name in plan.names(kind)]
        rows.append(
            {
                "namespace": plan.namespace,
                "pvc": plan.claim_name,
                "delete_first": ", ".join(owners) or "none",
                "workload_count": str(len(owners)),
            }
        )
    return rows


def _build_teardown_rows(results: list[TeardownResult]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for result in results:
        rows.append(
            {
                "namespace": result.namespace,
                "pvc": result.claim_name,
                "status": "deleted" if result.success else "failed",
                "workloads_deleted": ", ".join(f"{item.kind.value}/{item.name}" for item in result.deleted),
                "forced": ", ".join(result.forced),
                "message": result.message,
            }
        )
    return rows


def _build_workflow_rows(
    *,
    connected: bool,
    backup_count: int,
    planned: bool,
    restore_started: bool,
) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    inspect_state = "done" if backup_count > 0 else ("active" if connected else "blocked")
    preview_state = "done" if planned else ("active" if backup_count > 0 else "blocked")
    restore_state = "done" if restore_started else ("active" if planned else "blocked")

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster from the sidebar.",
        },
        {
            "step": "2. Inspect",
            "state": _WORKFLOW_STATE_LABELS[inspect_state],
            "description": "Load Velero backups and pick the one to restore from.",
        },
        {
            "step": "3. Preview",
            "state": _WORKFLOW_STATE_LABELS[preview_state],
            "description": "Dry run: list the workloads and PVCs that must be deleted first.",
        },
        {
            "step": "4. Restore",
            "state": _WORKFLOW_STATE_LABELS[restore_state],
            "description": "Delete the listed resources and create the Velero restore.",
        },
    ]


def _build_restore_options(
    *,
    backup_name: str,
    scope_label: str,
    namespace_input: str,
    claim_input: str,
    restore_name_input: str,
    wait: bool,
    dry_run: bool,
) -> RestoreOptions:
    namespace = namespace_input.strip() or None
    claim_name = claim_input.strip() or None
    if scope_label == _SCOPE_ALL_LABEL:
        namespace = None
        claim_name = None
    elif scope_label == _SCOPE_NAMESPACE_LABEL:
        claim_name = None

    return RestoreOptions(
        backup_name=backup_name,
        all_namespaces=scope_label == _SCOPE_ALL_LABEL,
        namespace=namespace,
        claim_name=claim_name,
        restore_name=restore_name_input.strip() or None,
        auto_delete=True,
        wait=wait,
        dry_run=dry_run,
    )


def _outcome_banner(outcome: RestoreOutcome) -> tuple[str, str]:
    if outcome.aborted:
        return "info", "Restore aborted before any change was made."
    if outcome.exit_code != 0:
        return "error", outcome.message or "Restore failed. Review the log below."
    if outcome.summary is not None:
        return "success", f"Restore {outcome.restore_name} finished in phase {outcome.summary.phase}."
    return "success", f"Restore {outcome.restore_name} created. Velero is restoring volume data in the background."


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _default_auth_mode() -> str:
    configured_default = os.getenv("VPR_DEFAULT_AUTH_MODE", "").strip().lower()
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


def _auth_mode_guidance(auth_mode: str) -> str:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        return (
            "Uses the ServiceAccount of the running pod. It needs RBAC to delete workloads and PVCs "
            "and to create velero.io restores."
        )
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return "Use for local runs. Provide a readable kubeconfig file path."
    return (
        "Use only for short-lived troubleshooting. Paste a full kubeconfig with apiVersion, clusters, "
        "contexts, and users."
    )


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

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

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def _context_options(kubeconfig_path_input: str) -> list[str]:
    if _validate_kubeconfig_path_input(kubeconfig_path_input) is not None:
        return []
    try:
        return list_context_names(kubeconfig_path_input)
    except KubernetesAuthenticationError:
        return []


def _coordinator(config: RestoreConfig, log_lines: list[str]) -> RestoreCoordinator:
    clients = st.session_state.clients
    velero = VeleroClient(
        custom_api=clients.custom_api,
        apps_api=clients.apps_api,
        namespace=config.velero_namespace,
        clock=config.clock,
    )
    # The console confirms with its own checkbox before calling run().
    return RestoreCoordinator(
        gateway=ClusterGateway(clients),
        velero=velero,
        config=config,
        confirm=lambda _prompt: True,
        emit=log_lines.append,
    )


def _reset_restore_state() -> None:
    st.session_state.backups = []
    st.session_state.planned_options = None
    st.session_state.plans = []
    st.session_state.plan_log = []
    st.session_state.last_outcome = None
    st.session_state.last_log = []


def main() -> None:
    st.set_page_config(page_title="Velero PVC Restore", layout="wide")
    _initialize_state()

    base_config = RestoreConfig()

    st.title("Velero PVC Restore")
    st.caption("Restore PVC data from Velero file-system backups, deleting the workloads that block it first.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.clients is not None),
            backup_count=len(st.session_state.backups),
            planned=st.session_state.planned_options is not None,
            restore_started=st.session_state.last_outcome is not None,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode()),
    )
    st.sidebar.caption(_auth_mode_guidance(auth_mode))

    kubeconfig_path_input = "~/.kube/config"
    kubeconfig_text_input = ""
    context = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value="~/.kube/config")
        contexts = _context_options(kubeconfig_path_input)
        if contexts:
            context = st.sidebar.selectbox("Kubernetes context", options=["(current)", *contexts])
            context = "" if context == "(current)" else context
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)
        context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    velero_namespace = st.sidebar.text_input("Velero namespace", value=base_config.velero_namespace)
    config = replace(base_config, velero_namespace=velero_namespace.strip() or base_config.velero_namespace)

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
                kubeconfig_path: str | None = None
                in_cluster = auth_mode == _AUTH_MODE_IN_CLUSTER

                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=in_cluster,
                )

                st.session_state.connected = True
                st.session_state.clients = clients
                st.session_state.connection = {
                    "auth_mode": auth_mode,
                    "kubeconfig_path": kubeconfig_path,
                    "context": context or None,
                    "in_cluster": in_cluster,
                }
                _reset_restore_state()
                st.success("Connected to Kubernetes cluster.")
            except KubernetesAuthenticationError as error:
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.connection = {}
        _reset_restore_state()

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to list backups and plan a restore.")
        return

    st.subheader("Velero Backups")
    if st.button("Refresh backups"):
        inspect_log: list[str] = []
        with st.spinner(f"Listing backups in namespace {config.velero_namespace}..."):
            try:
                st.session_state.backups = _coordinator(config, inspect_log).velero.list_backups()
                if not st.session_state.backups:
                    st.warning(f"No backups found in namespace {config.velero_namespace}.")
            except VeleroError as error:
                st.error(str(error))

    backups: list[BackupSummary] = st.session_state.backups
    if not backups:
        st.info("Click 'Refresh backups' to load Velero backups.")
        return
    st.dataframe(_build_backup_rows(backups), use_container_width=True, hide_index=True)

    st.subheader("Restore Scope")
    backup_name = st.selectbox("Backup", options=[backup.name for backup in backups])
    scope_label = st.radio(
        "Scope",
        options=[_SCOPE_ALL_LABEL, _SCOPE_NAMESPACE_LABEL, _SCOPE_CLAIM_LABEL],
        horizontal=True,
    )
    namespace_input = ""
    claim_input = ""
    if scope_label != _SCOPE_ALL_LABEL:
        namespace_input = st.text_input("Namespace", value="")
    if scope_label == _SCOPE_CLAIM_LABEL:
        claim_input = st.text_input("PVC name", value="")
    restore_name_input = st.text_input("Restore name (optional)", value="", help="Defaults to restore-<timestamp>.")
    wait = st.checkbox("Wait for the restore to complete", value=False)

    options = _build_restore_options(
        backup_name=backup_name or "",
        scope_label=scope_label,
        namespace_input=namespace_input,
        claim_input=claim_input,
        restore_name_input=restore_name_input,
        wait=wait,
        dry_run=True,
    )

    if st.button("Preview resources to delete"):
        try:
            validate_options(options)
        except RestoreValidationError as error:
            st.error(str(error))
        else:
            plan_log: list[str] = []
            with st.spinner("Resolving PVC owners..."):
                outcome = _coordinator(config, plan_log).run(options)
            st.session_state.plan_log = plan_log
            st.session_state.plans = outcome.plans
            st.session_state.planned_options = options if outcome.exit_code == 0 else None
            st.session_state.last_outcome = None
            if outcome.exit_code != 0:
                st.error(outcome.message or "Unable to build the deletion plan.")

    planned_options: RestoreOptions | None = st.session_state.planned_options
    if planned_options is not None:
        st.subheader("Deletion Plan")
        if st.session_state.plans:
            st.dataframe(_build_plan_rows(st.session_state.plans), use_container_width=True, hide_index=True)
        else:
            st.info("No existing PVCs or workloads need deletion for this scope.")
        with st.expander("Backup contents and dry-run log"):
            st.code("\n".join(st.session_state.plan_log) or "(empty)")

        if planned_options != options:
            st.warning("Scope changed since the preview. Preview again before restoring.")
        else:
            acknowledged = st.checkbox(
                "I understand the listed workloads and PVCs will be deleted and recreated by Velero.",
                value=False,
            )
            if st.button("Delete resources and restore", type="primary", disabled=not acknowledged):
                restore_log: list[str] = []
                with st.spinner("Deleting resources and creating the restore..."):
                    st.session_state.last_outcome = _coordinator(config, restore_log).run(
                        replace(planned_options, dry_run=False)
                    )
                st.session_state.last_log = restore_log
                st.session_state.planned_options = None

    outcome: RestoreOutcome | None = st.session_state.last_outcome
    if outcome is not None:
        st.subheader("Latest Restore")
        level, message = _outcome_banner(outcome)
        getattr(st, level)(message)
        if outcome.teardown_results:
            st.dataframe(_build_teardown_rows(outcome.teardown_results), use_container_width=True, hide_index=True)
        if st.session_state.last_log:
            st.code("\n".join(st.session_state.last_log))


if __name__ == "__main__":
    main()
