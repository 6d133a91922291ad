from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable
import os
import tempfile

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import VolumeClaim, WorkloadKind

PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
PERSISTENT_VOLUME = "PersistentVolume"
REPLICA_SET = "ReplicaSet"
CLEAR_FINALIZERS_PATCH = {"metadata": {"finalizers": None}}


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    batch_api: client.BatchV1Api
    custom_api: client.CustomObjectsApi


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
        apps_api=client.AppsV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
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


@dataclass(frozen=True)
class _ResourceOps:
    read: Callable[..., Any]
    delete: Callable[..., Any]
    patch: Callable[..., Any]
    namespaced: bool = True


class ClusterGateway:
    """Resource-oriented access to the cluster API.

    Every call addresses an object by (kind, namespace, name). Reads return the
    object or ``None`` when it does not exist; any other API failure is raised
    as ``ApiException``.
    """

    def __init__(self, clients: KubernetesClients) -> None:
        self.clients = clients
        core = clients.core_api
        apps = clients.apps_api
        batch = clients.batch_api
        self._ops: dict[str, _ResourceOps] = {
            WorkloadKind.POD.value: _ResourceOps(
                core.read_namespaced_pod, core.delete_namespaced_pod, core.patch_namespaced_pod
            ),
            WorkloadKind.STATEFUL_SET.value: _ResourceOps(
                apps.read_namespaced_stateful_set,
                apps.delete_namespaced_stateful_set,
                apps.patch_namespaced_stateful_set,
            ),
            WorkloadKind.DEPLOYMENT.value: _ResourceOps(
                apps.read_namespaced_deployment,
                apps.delete_namespaced_deployment,
                apps.patch_namespaced_deployment,
            ),
            WorkloadKind.DAEMON_SET.value: _ResourceOps(
                apps.read_namespaced_daemon_set,
                apps.delete_namespaced_daemon_set,
                apps.patch_namespaced_daemon_set,
            ),
            WorkloadKind.JOB.value: _ResourceOps(
                batch.read_namespaced_job, batch.delete_namespaced_job, batch.patch_namespaced_job
            ),
            REPLICA_SET: _ResourceOps(
                apps.read_namespaced_replica_set,
                apps.delete_namespaced_replica_set,
                apps.patch_namespaced_replica_set,
            ),
            PERSISTENT_VOLUME_CLAIM: _ResourceOps(
                core.read_namespaced_persistent_volume_claim,
                core.delete_namespaced_persistent_volume_claim,
                core.patch_namespaced_persistent_volume_claim,
            ),
            PERSISTENT_VOLUME: _ResourceOps(
                core.read_persistent_volume,
                core.delete_persistent_volume,
                core.patch_persistent_volume,
                namespaced=False,
            ),
        }

    def read(self, kind: str, namespace: str, name: str) -> Any | None:
        ops = self._resource_ops(kind)
        try:
            if ops.namespaced:
                return ops.read(name=name, namespace=namespace)
            return ops.read(name=name)
        except ApiException as error:
            if error.status == 404:
                return None
            raise

    def exists(self, kind: str, namespace: str, name: str) -> bool:
        return self.read(kind, namespace, name) is not None

    def delete(
        self,
        kind: str,
        namespace: str,
        name: str,
        *,
        grace_period_seconds: int | None = None,
        propagation_policy: str | None = None,
    ) -> bool:
        """Issue a delete; returns False when the object was already gone."""
        ops = self._resource_ops(kind)
        body = client.V1DeleteOptions(
            grace_period_seconds=grace_period_seconds,
            propagation_policy=propagation_policy,
        )
        try:
            if ops.namespaced:
                ops.delete(name=name, namespace=namespace, body=body)
            else:
                ops.delete(name=name, body=body)
        except ApiException as error:
            if error.status == 404:
                return False
            raise
        return True

    def clear_finalizers(self, kind: str, namespace: str, name: str) -> bool:
        ops = self._resource_ops(kind)
        try:
            if ops.namespaced:
                ops.patch(name=name, namespace=namespace, body=CLEAR_FINALIZERS_PATCH)
            else:
                ops.patch(name=name, body=CLEAR_FINALIZERS_PATCH)
        except ApiException as error:
            if error.status == 404:
                return False
            raise
        return True

    def list_pods(self, namespace: str) -> list[Any]:
        return list(self.clients.core_api.list_namespaced_pod(namespace=namespace).items or [])

    def list_stateful_sets(self, namespace: str) -> list[Any]:
        return list(self.clients.apps_api.list_namespaced_stateful_set(namespace=namespace).items or [])

    def list_claims(self, namespace: str | None = None) -> list[VolumeClaim]:
        if namespace:
            items = self.clients.core_api.list_namespaced_persistent_volume_claim(namespace=namespace).items
        else:
            items = self.clients.core_api.list_persistent_volume_claim_for_all_namespaces().items
        claims = [_volume_claim(item) for item in items or []]
        claims.sort(key=lambda claim: (claim.namespace, claim.name))
        return claims

    def read_claim(self, namespace: str, name: str) -> VolumeClaim | None:
        item = self.read(PERSISTENT_VOLUME_CLAIM, namespace, name)
        return _volume_claim(item) if item is not None else None

    def volume_phase(self, name: str) -> str | None:
        volume = self.read(PERSISTENT_VOLUME, "", name)
        if volume is None:
            return None
        return volume.status.phase if volume.status and volume.status.phase else "Unknown"

    def _resource_ops(self, kind: str) -> _ResourceOps:
        try:
            return self._ops[kind]
        except KeyError:
            raise ValueError(f"unsupported resource kind: {kind}") from None


def pods_using_claim(pods: list[Any], claim_name: str):
    for pod in pods:
        if pod_mounts_claim(pod, claim_name):
            yield pod


def pod_mounts_claim(pod: Any, claim_name: str) -> bool:
    spec = getattr(pod, "spec", None)
    for volume in getattr(spec, "volumes", None) or []:
        source = getattr(volume, "persistent_volume_claim", None)
        if source is not None and getattr(source, "claim_name", None) == claim_name:
            return True
    return False


def owner_reference(owner_refs: list[Any] | None) -> Any | None:
    refs = owner_refs or []
    for ref in refs:
        if getattr(ref, "controller", False):
            return ref
    return refs[0] if refs else None


def _volume_claim(item: Any) -> VolumeClaim:
    metadata = item.metadata
    phase = item.status.phase if item.status and item.status.phase else "Unknown"
    bound_volume = item.spec.volume_name if item.spec else None
    return VolumeClaim(
        namespace=metadata.namespace or "",
        name=metadata.name or "",
        phase=phase,
        bound_volume=bound_volume or None,
    )


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


def error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
