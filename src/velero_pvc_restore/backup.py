from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable
import logging
import re

import click
from kubernetes.client import ApiException

from .config import RestoreConfig
from .k8s import ClusterGateway, error_message
from .logging_config import STEP
from .models import BackupRequest, BackupSummary, VolumeClaim
from .velero import BackupCreationError, VeleroClient, VeleroError, equivalent_backup_command

logger = logging.getLogger(__name__)

_SELECTOR_TERM = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_./]*[A-Za-z0-9])?)=([-A-Za-z0-9_.]*)$")


class BackupValidationError(ValueError):
    """Raised when backup options are incomplete or contradictory."""


@dataclass(frozen=True)
class BackupOptions:
    all_namespaces: bool = False
    namespace: str | None = None
    backup_name: str | None = None
    ttl: str | None = None
    storage_location: str | None = None
    selector: str | None = None
    exclude_namespaces: tuple[str, ...] = ()
    wait: bool = False
    assume_yes: bool = False


@dataclass
class BackupOutcome:
    exit_code: int
    backup_name: str | None = None
    claims: list[VolumeClaim] = field(default_factory=list)
    summary: BackupSummary | None = None
    aborted: bool = False
    message: str = ""


def validate_backup_options(options: BackupOptions) -> None:
    if not options.all_namespaces and not options.namespace:
        raise BackupValidationError("Either -a (all namespaces) or -n (specific namespace) is required")
    if options.all_namespaces and options.namespace:
        raise BackupValidationError("Cannot use both -a and -n together")
    if options.exclude_namespaces and not options.all_namespaces:
        raise BackupValidationError("--exclude-namespaces only applies together with -a")
    parse_label_selector(options.selector)


def parse_label_selector(selector: str | None) -> dict[str, str]:
    """Parse ``app=postgres,tier=db`` into match labels."""
    if not selector or not selector.strip():
        return {}
    labels: dict[str, str] = {}
    for term in selector.split(","):
        match = _SELECTOR_TERM.match(term.strip())
        if match is None:
            raise BackupValidationError(f"Unsupported label selector term: '{term.strip()}' (expected key=value)")
        labels[match.group(1)] = match.group(3)
    return labels


def default_backup_name(namespace: str | None, now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=UTC)
    prefix = namespace if namespace else "all-namespaces"
    return f"{prefix}-pvc-backup-{moment:%Y%m%d%H%M%S}"


class BackupCoordinator:
    def __init__(
        self,
        *,
        gateway: ClusterGateway,
        velero: VeleroClient,
        config: RestoreConfig,
        confirm: Callable[[str], bool] | None = None,
        emit: Callable[[str], None] = click.echo,
    ) -> None:
        self.gateway = gateway
        self.velero = velero
        self.config = config
        self.confirm = confirm or (lambda _prompt: True)
        self.emit = emit

    def build_request(self, options: BackupOptions) -> BackupRequest:
        validate_backup_options(options)
        return BackupRequest(
            backup_name=options.backup_name or default_backup_name(options.namespace),
            namespace=options.namespace,
            ttl=options.ttl or self.config.backup_ttl,
            storage_location=options.storage_location or self.config.backup_storage_location,
            label_selector=parse_label_selector(options.selector),
            exclude_namespaces=tuple(options.exclude_namespaces),
            wait=options.wait,
        )

    def claims_in_scope(self, request: BackupRequest) -> list[VolumeClaim]:
        claims = self.gateway.list_claims(request.namespace)
        excluded = set(request.exclude_namespaces)
        return [claim for claim in claims if claim.namespace not in excluded]

    def run(self, options: BackupOptions) -> BackupOutcome:
        request = self.build_request(options)

        try:
            installed = self.velero.is_installed()
        except VeleroError as error:
            logger.error(str(error))
            return BackupOutcome(exit_code=1, backup_name=request.backup_name, message=str(error))
        if not installed:
            message = f"Velero deployment not found in namespace {self.velero.namespace}"
            logger.error(message)
            return BackupOutcome(exit_code=1, backup_name=request.backup_name, message=message)

        logger.log(STEP, "Analyzing PVCs to backup...")
        try:
            claims = self.claims_in_scope(request)
        except ApiException as error:
            logger.warning("Unable to list PVCs: %s", error_message(error))
            claims = []
        if request.namespace:
            logger.info("Backing up PVCs in namespace: %s", request.namespace)
        elif request.exclude_namespaces:
            logger.info("Backing up all PVCs EXCEPT namespaces: %s", ",".join(request.exclude_namespaces))
        else:
            logger.info("Backing up ALL PVCs in all namespaces")
        if not claims:
            logger.warning("No PVCs found in scope")
        for claim in claims:
            self.emit(f"  - {claim.namespace}/{claim.name}")

        logger.info("Backup Configuration:")
        self.emit(f"  Name: {request.backup_name}")
        self.emit(f"  TTL: {request.ttl}")
        self.emit(f"  Storage Location: {request.storage_location}")
        self.emit(f"  FSB Enabled: {str(request.default_volumes_to_fs_backup).lower()}")
        if request.label_selector:
            self.emit(f"  Label Selector: {options.selector}")
        if request.exclude_namespaces:
            self.emit(f"  Excluded Namespaces: {','.join(request.exclude_namespaces)}")

        if not options.assume_yes and not self.confirm("Proceed with backup?"):
            logger.info("Aborted.")
            return BackupOutcome(exit_code=0, backup_name=request.backup_name, claims=claims, aborted=True)

        logger.log(STEP, "Creating backup...")
        logger.info("Running: %s", equivalent_backup_command(request, velero_namespace=self.velero.namespace))
        try:
            self.velero.create_backup(request)
        except BackupCreationError as error:
            logger.error(str(error))
            return BackupOutcome(exit_code=1, backup_name=request.backup_name, claims=claims, message=str(error))

        if not request.wait:
            logger.info("Backup started. Monitor with:")
            self.emit(f"  velero backup describe {request.backup_name} -n {self.velero.namespace} --details")
            self.emit(f"  velero backup logs {request.backup_name} -n {self.velero.namespace}")
            return BackupOutcome(exit_code=0, backup_name=request.backup_name, claims=claims)

        try:
            summary = self.velero.wait_for_backup(request.backup_name, self.config.velero_wait_policy())
            contents = self.velero.describe_backup_contents(request.backup_name, backup=summary)
        except VeleroError as error:
            logger.error(str(error))
            return BackupOutcome(exit_code=1, backup_name=request.backup_name, claims=claims, message=str(error))

        phase = summary.phase if summary else "unknown"
        logger.info("Backup finished in phase %s. Volume backup details:", phase)
        if not contents.pod_volume_backups:
            self.emit("  None found")
        for record in contents.pod_volume_backups:
            self.emit(f"  {record.namespace}/{record.pod_name} volume={record.volume} phase={record.phase}")

        exit_code = 0 if summary is not None and summary.phase == "Completed" else 1
        return BackupOutcome(
            exit_code=exit_code,
            backup_name=request.backup_name,
            claims=claims,
            summary=summary,
            message="" if exit_code == 0 else f"Backup {request.backup_name} finished in phase {phase}",
        )
