from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class WorkloadKind(str, Enum):
    STATEFUL_SET = "StatefulSet"
    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"
    JOB = "Job"
    POD = "Pod"


# Controllers first so their reconcile loops cannot recreate pods mid-teardown.
DELETION_ORDER: tuple[WorkloadKind, ...] = (
    WorkloadKind.STATEFUL_SET,
    WorkloadKind.DEPLOYMENT,
    WorkloadKind.DAEMON_SET,
    WorkloadKind.JOB,
    WorkloadKind.POD,
)


@dataclass(frozen=True)
class VolumeClaim:
    namespace: str
    name: str
    phase: str = "Unknown"
    bound_volume: str | None = None


@dataclass(frozen=True)
class Workload:
    kind: WorkloadKind
    namespace: str
    name: str


@dataclass
class TeardownPlan:
    namespace: str
    claim_name: str
    workloads: dict[WorkloadKind, list[str]] = field(
        default_factory=lambda: {kind: [] for kind in DELETION_ORDER}
    )

    def add(self, kind: WorkloadKind, name: str) -> bool:
        names = self.workloads[kind]
        if name in names:
            return False
        names.append(name)
        return True

    def names(self, kind: WorkloadKind) -> list[str]:
        return list(self.workloads[kind])

    def ordered_workloads(self) -> list[Workload]:
        return [
            Workload(kind=kind, namespace=self.namespace, name=name)
            for kind in DELETION_ORDER
            for name in self.workloads[kind]
        ]

    def is_empty(self) -> bool:
        return not any(self.workloads[kind] for kind in DELETION_ORDER)


@dataclass(frozen=True)
class TeardownResult:
    namespace: str
    claim_name: str
    success: bool
    deleted: tuple[Workload, ...] = ()
    forced: tuple[str, ...] = ()
    message: str = ""


@dataclass(frozen=True)
class RestoreRequest:
    backup_name: str
    restore_name: str
    namespace: str | None = None
    restore_volumes: bool = True
    wait: bool = False

    @property
    def included_namespaces(self) -> list[str]:
        return [self.namespace] if self.namespace else ["*"]


@dataclass(frozen=True)
class BackupRequest:
    backup_name: str
    namespace: str | None = None
    ttl: str = "720h"
    storage_location: str = "default"
    label_selector: dict[str, str] = field(default_factory=dict)
    exclude_namespaces: tuple[str, ...] = ()
    default_volumes_to_fs_backup: bool = True
    wait: bool = False

    @property
    def included_namespaces(self) -> list[str]:
        return [self.namespace] if self.namespace else ["*"]


@dataclass(frozen=True)
class BackupSummary:
    name: str
    phase: str
    created_at: str | None = None
    expires_at: str | None = None
    storage_location: str | None = None
    included_namespaces: tuple[str, ...] = ()
    items_backed_up: int | None = None
    total_items: int | None = None
    errors: int = 0
    warnings: int = 0


@dataclass(frozen=True)
class PodVolumeRecord:
    namespace: str
    pod_name: str
    volume: str
    phase: str
    bytes_done: int | None = None
    total_bytes: int | None = None


@dataclass(frozen=True)
class BackupContents:
    backup_name: str
    namespaces_with_claims: tuple[str, ...] = ()
    pod_volume_backups: tuple[PodVolumeRecord, ...] = ()


@dataclass(frozen=True)
class RestoreSummary:
    name: str
    phase: str
    items_restored: int | None = None
    total_items: int | None = None
    warnings: int = 0
    errors: int = 0
    failure_reason: str | None = None
    validation_errors: tuple[str, ...] = ()
    pod_volume_restores: tuple[PodVolumeRecord, ...] = ()
