from __future__ import annotations

from dataclasses import replace
from typing import Any
import logging
import shlex

from kubernetes import client
from kubernetes.client import ApiException

from .config import Clock, RetryPolicy
from .k8s import error_message
from .models import BackupContents, BackupRequest, BackupSummary, PodVolumeRecord, RestoreRequest, RestoreSummary

logger = logging.getLogger(__name__)

VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"
VELERO_DEPLOYMENT = "velero"
BACKUP_NAME_LABEL = "velero.io/backup-name"
RESTORE_NAME_LABEL = "velero.io/restore-name"
TERMINAL_PHASES = frozenset({"Completed", "PartiallyFailed", "Failed", "FailedValidation"})


class VeleroError(RuntimeError):
    """Raised when the Velero API cannot be queried."""


class BackupNotFoundError(VeleroError):
    def __init__(self, backup_name: str, namespace: str) -> None:
        super().__init__(f"Backup '{backup_name}' not found in namespace '{namespace}'")
        self.backup_name = backup_name


class RestoreCreationError(VeleroError):
    def __init__(self, *, command: str, reason: str) -> None:
        super().__init__(f"Velero rejected the restore: {reason}. Failing command: {command}")
        self.command = command


class BackupCreationError(VeleroError):
    def __init__(self, *, command: str, reason: str) -> None:
        super().__init__(f"Velero rejected the backup: {reason}. Failing command: {command}")
        self.command = command


class VeleroClient:
    """Velero backup and restore operations through the velero.io/v1 resources."""

    def __init__(
        self,
        *,
        custom_api: client.CustomObjectsApi,
        namespace: str,
        apps_api: client.AppsV1Api | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.namespace = namespace
        self.apps_api = apps_api
        self.clock = clock or Clock()

    def is_installed(self) -> bool:
        if self.apps_api is None:
            raise VeleroError("an AppsV1Api client is required to check the velero deployment")
        try:
            self.apps_api.read_namespaced_deployment(name=VELERO_DEPLOYMENT, namespace=self.namespace)
        except ApiException as error:
            if error.status == 404:
                return False
            raise VeleroError(_api_failure("read the velero deployment", error)) from error
        return True

    def list_backups(self) -> list[BackupSummary]:
        items = self._list("backups", operation="list backups")
        backups = [_backup_summary(item) for item in items]
        backups.sort(key=lambda backup: backup.created_at or "", reverse=True)
        return backups

    def get_backup(self, name: str) -> BackupSummary | None:
        item = self._get("backups", name, operation=f"get backup '{name}'")
        return _backup_summary(item) if item is not None else None

    def require_backup(self, name: str) -> BackupSummary:
        backup = self.get_backup(name)
        if backup is None:
            raise BackupNotFoundError(name, self.namespace)
        return backup

    def describe_backup_contents(self, name: str, backup: BackupSummary | None = None) -> BackupContents:
        """Namespaces with claims in the backup and the pod volume backups behind them.

        Namespaces named explicitly in the backup's ``includedNamespaces`` are
        reported even when none of their claims had a pod volume backup. The
        backup is read when ``backup`` is not supplied.
        """
        if backup is None:
            backup = self.get_backup(name)
        items = self._list(
            "podvolumebackups",
            operation=f"list pod volume backups for '{name}'",
            label_selector=f"{BACKUP_NAME_LABEL}={name}",
        )
        records = tuple(sorted((_pod_volume_record(item) for item in items), key=_record_sort_key))
        namespaces = {record.namespace for record in records if record.namespace}
        if backup is not None:
            namespaces.update(namespace for namespace in backup.included_namespaces if namespace and namespace != "*")
        return BackupContents(
            backup_name=name,
            namespaces_with_claims=tuple(sorted(namespaces)),
            pod_volume_backups=records,
        )

    def create_restore(self, request: RestoreRequest) -> None:
        body = {
            "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
            "kind": "Restore",
            "metadata": {"name": request.restore_name, "namespace": self.namespace},
            "spec": {
                "backupName": request.backup_name,
                "includedNamespaces": request.included_namespaces,
                "restorePVs": request.restore_volumes,
            },
        }
        try:
            self.custom_api.create_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural="restores",
                body=body,
            )
        except ApiException as error:
            raise RestoreCreationError(
                command=equivalent_restore_command(request, velero_namespace=self.namespace),
                reason=_api_failure("create restore", error),
            ) from error

    def get_restore(self, name: str) -> RestoreSummary | None:
        item = self._get("restores", name, operation=f"get restore '{name}'")
        return _restore_summary(item) if item is not None else None

    def wait_for_restore(self, name: str, policy: RetryPolicy) -> RestoreSummary | None:
        latest: RestoreSummary | None = None

        def finished() -> bool:
            nonlocal latest
            latest = self.get_restore(name)
            return latest is not None and latest.phase in TERMINAL_PHASES

        if not policy.poll(finished, self.clock):
            logger.warning("Restore %s did not finish within %ss", name, f"{policy.timeout_seconds:g}")
        return latest

    def list_pod_volume_restores(self, restore_name: str) -> tuple[PodVolumeRecord, ...]:
        items = self._list(
            "podvolumerestores",
            operation=f"list pod volume restores for '{restore_name}'",
            label_selector=f"{RESTORE_NAME_LABEL}={restore_name}",
        )
        return tuple(sorted((_pod_volume_record(item) for item in items), key=_record_sort_key))

    def describe_restore(self, name: str) -> RestoreSummary | None:
        summary = self.get_restore(name)
        if summary is None:
            return None
        return replace(summary, pod_volume_restores=self.list_pod_volume_restores(name))

    def delete_restores_for_backup(self, backup_name: str) -> list[str]:
        """Remove earlier Restore objects created from ``backup_name``; best-effort."""
        try:
            items = self._list(
                "restores",
                operation=f"list restores for '{backup_name}'",
                label_selector=f"{BACKUP_NAME_LABEL}={backup_name}",
            )
        except VeleroError as error:
            logger.warning("Skipping cleanup of old restores: %s", error)
            return []

        deleted: list[str] = []
        for item in items:
            name = item.get("metadata", {}).get("name")
            if not name:
                continue
            try:
                self.custom_api.delete_namespaced_custom_object(
                    group=VELERO_GROUP,
                    version=VELERO_VERSION,
                    namespace=self.namespace,
                    plural="restores",
                    name=name,
                )
            except ApiException as error:
                if error.status != 404:
                    logger.warning("Unable to delete old restore %s: %s", name, error_message(error))
                continue
            deleted.append(name)
        return deleted

    def create_backup(self, request: BackupRequest) -> None:
        spec: dict[str, Any] = {
            "includedNamespaces": request.included_namespaces,
            "ttl": request.ttl,
            "storageLocation": request.storage_location,
            "defaultVolumesToFsBackup": request.default_volumes_to_fs_backup,
        }
        if request.exclude_namespaces:
            spec["excludedNamespaces"] = list(request.exclude_namespaces)
        if request.label_selector:
            spec["labelSelector"] = {"matchLabels": dict(request.label_selector)}
        body = {
            "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
            "kind": "Backup",
            "metadata": {"name": request.backup_name, "namespace": self.namespace},
            "spec": spec,
        }
        try:
            self.custom_api.create_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural="backups",
                body=body,
            )
        except ApiException as error:
            raise BackupCreationError(
                command=equivalent_backup_command(request, velero_namespace=self.namespace),
                reason=_api_failure("create backup", error),
            ) from error

    def wait_for_backup(self, name: str, policy: RetryPolicy) -> BackupSummary | None:
        latest: BackupSummary | None = None

        def finished() -> bool:
            nonlocal latest
            latest = self.get_backup(name)
            return latest is not None and latest.phase in TERMINAL_PHASES

        if not policy.poll(finished, self.clock):
            logger.warning("Backup %s did not finish within %ss", name, f"{policy.timeout_seconds:g}")
        return latest

    def _list(self, plural: str, *, operation: str, label_selector: str | None = None) -> list[dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            response = self.custom_api.list_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural=plural,
                **kwargs,
            )
        except ApiException as error:
            raise VeleroError(_api_failure(operation, error)) from error
        return list(response.get("items") or [])

    def _get(self, plural: str, name: str, *, operation: str) -> dict[str, Any] | None:
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural=plural,
                name=name,
            )
        except ApiException as error:
            if error.status == 404:
                return None
            raise VeleroError(_api_failure(operation, error)) from error


def equivalent_restore_command(request: RestoreRequest, *, velero_namespace: str) -> str:
    command = [
        "velero",
        "restore",
        "create",
        request.restore_name,
        "--from-backup",
        request.backup_name,
        f"--restore-volumes={str(request.restore_volumes).lower()}",
        "-n",
        velero_namespace,
        "--include-namespaces",
        ",".join(request.included_namespaces),
    ]
    if request.wait:
        command.append("--wait")
    return shlex.join(command)


def equivalent_backup_command(request: BackupRequest, *, velero_namespace: str) -> str:
    command = [
        "velero",
        "backup",
        "create",
        request.backup_name,
        "--ttl",
        request.ttl,
        "--storage-location",
        request.storage_location,
        f"--default-volumes-to-fs-backup={str(request.default_volumes_to_fs_backup).lower()}",
        "-n",
        velero_namespace,
        "--include-namespaces",
        ",".join(request.included_namespaces),
    ]
    if request.exclude_namespaces:
        command.extend(["--exclude-namespaces", ",".join(request.exclude_namespaces)])
    if request.label_selector:
        command.extend(["--selector", ",".join(f"{key}={value}" for key, value in request.label_selector.items())])
    if request.wait:
        command.append("--wait")
    return shlex.join(command)


def _backup_summary(item: dict[str, Any]) -> BackupSummary:
    metadata = item.get("metadata") or {}
    spec = item.get("spec") or {}
    status = item.get("status") or {}
    progress = status.get("progress") or {}
    return BackupSummary(
        name=metadata.get("name", ""),
        phase=status.get("phase") or "New",
        created_at=metadata.get("creationTimestamp"),
        expires_at=status.get("expiration"),
        storage_location=spec.get("storageLocation"),
        included_namespaces=tuple(spec.get("includedNamespaces") or ()),
        items_backed_up=progress.get("itemsBackedUp"),
        total_items=progress.get("totalItems"),
        errors=int(status.get("errors") or 0),
        warnings=int(status.get("warnings") or 0),
    )


def _restore_summary(item: dict[str, Any]) -> RestoreSummary:
    metadata = item.get("metadata") or {}
    status = item.get("status") or {}
    progress = status.get("progress") or {}
    return RestoreSummary(
        name=metadata.get("name", ""),
        phase=status.get("phase") or "New",
        items_restored=progress.get("itemsRestored"),
        total_items=progress.get("totalItems"),
        warnings=int(status.get("warnings") or 0),
        errors=int(status.get("errors") or 0),
        failure_reason=status.get("failureReason") or None,
        validation_errors=tuple(status.get("validationErrors") or ()),
    )


def _pod_volume_record(item: dict[str, Any]) -> PodVolumeRecord:
    spec = item.get("spec") or {}
    pod = spec.get("pod") or {}
    status = item.get("status") or {}
    progress = status.get("progress") or {}
    return PodVolumeRecord(
        namespace=pod.get("namespace", ""),
        pod_name=pod.get("name", ""),
        volume=spec.get("volume", ""),
        phase=status.get("phase") or "New",
        bytes_done=progress.get("bytesDone"),
        total_bytes=progress.get("totalBytes"),
    )


def _record_sort_key(record: PodVolumeRecord) -> tuple[str, str, str]:
    return record.namespace, record.pod_name, record.volume


def _api_failure(operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Velero API call failed while trying to {operation}: API status {status} ({reason})"
