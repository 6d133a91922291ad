from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Callable
import logging

import click
from kubernetes.client import ApiException

from .config import RestoreConfig
from .discovery import build_teardown_plan
from .k8s import ClusterGateway, error_message
from .logging_config import STEP
from .models import DELETION_ORDER, BackupContents, BackupSummary, RestoreRequest, RestoreSummary, TeardownPlan, TeardownResult
from .teardown import TeardownExecutor
from .velero import BackupNotFoundError, RestoreCreationError, VeleroClient, VeleroError, equivalent_restore_command

logger = logging.getLogger(__name__)

SUCCESS_PHASE = "Completed"
MAX_REPORT_ROWS = 10


class RestoreValidationError(ValueError):
    """Raised when restore options are incomplete or contradictory."""


class RestoreState(str, Enum):
    IDLE = "Idle"
    PLANNING_DISCOVERY = "PlanningDiscovery"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    TEARING_DOWN = "TearingDown"
    INVOKING_RESTORE = "InvokingRestore"
    REPORTING = "Reporting"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class RestoreOptions:
    backup_name: str
    all_namespaces: bool = False
    namespace: str | None = None
    claim_name: str | None = None
    restore_name: str | None = None
    auto_delete: bool = False
    wait: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class RestorePreparation:
    backup: BackupSummary
    contents: BackupContents
    namespaces: tuple[str, ...]
    plans: tuple[TeardownPlan, ...]

    @property
    def anything_to_delete(self) -> bool:
        return bool(self.plans)


@dataclass
class RestoreOutcome:
    state: RestoreState
    exit_code: int
    restore_name: str | None = None
    plans: list[TeardownPlan] = field(default_factory=list)
    teardown_results: list[TeardownResult] = field(default_factory=list)
    summary: RestoreSummary | None = None
    aborted: bool = False
    message: str = ""


def validate_options(options: RestoreOptions) -> None:
    if not options.backup_name or not options.backup_name.strip():
        raise RestoreValidationError("Backup name is required (-b)")
    if options.all_namespaces and options.namespace:
        raise RestoreValidationError("Use either -a (all namespaces) or -n (specific namespace), not both")
    if not options.all_namespaces and not options.namespace:
        raise RestoreValidationError("Either -a (all namespaces) or -n (specific namespace) is required")
    if options.claim_name and not options.namespace:
        raise RestoreValidationError("Namespace (-n) is required when specifying PVC (-p)")


def default_restore_name(now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=UTC)
    return f"restore-{moment:%Y%m%d%H%M%S}"


class RestoreCoordinator:
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
        self.executor = TeardownExecutor(gateway=gateway, config=config)
        self.confirm = confirm or (lambda _prompt: False)
        self.emit = emit
        self.state = RestoreState.IDLE

    def show_available_backups(self) -> list[BackupSummary]:
        backups = self.velero.list_backups()
        logger.info("Available backups:")
        if not backups:
            self.emit("  (none)")
        for backup in backups:
            self.emit(
                f"  {backup.name:<40} {backup.phase:<16} created={backup.created_at or 'unknown'}"
                f" expires={backup.expires_at or 'never'}"
            )
        logger.info("To see backup contents:")
        self.emit(f"  velero backup describe <backup-name> -n {self.velero.namespace} --details")
        return backups

    def prepare(self, options: RestoreOptions) -> RestorePreparation:
        validate_options(options)
        backup = self.velero.require_backup(options.backup_name)
        contents = self.velero.describe_backup_contents(options.backup_name, backup=backup)
        if options.namespace:
            namespaces: tuple[str, ...] = (options.namespace,)
        else:
            namespaces = contents.namespaces_with_claims

        plans: list[TeardownPlan] = []
        for namespace in namespaces:
            for claim_name in self._claims_in_scope(namespace, options.claim_name):
                plans.append(build_teardown_plan(self.gateway, namespace, claim_name))
        return RestorePreparation(backup=backup, contents=contents, namespaces=namespaces, plans=tuple(plans))

    def run(self, options: RestoreOptions) -> RestoreOutcome:
        validate_options(options)
        restore_name = options.restore_name or default_restore_name()
        self._transition(RestoreState.PLANNING_DISCOVERY)

        try:
            preparation = self.prepare(options)
        except BackupNotFoundError as error:
            logger.error(str(error))
            try:
                self.show_available_backups()
            except VeleroError as listing_error:
                logger.error(str(listing_error))
            return self._fail(str(error), restore_name=restore_name)
        except VeleroError as error:
            logger.error(str(error))
            return self._fail(str(error), restore_name=restore_name)

        logger.log(STEP, "Backup Information")
        self.render_backup_contents(preparation.contents)

        plans = list(preparation.plans)
        logger.log(STEP, "Resources that need to be deleted for restore:")
        self._render_plans(plans, dry_run=options.dry_run)

        if options.dry_run:
            logger.info("Dry run complete. No changes made.")
            self._transition(RestoreState.DONE)
            return RestoreOutcome(state=self.state, exit_code=0, restore_name=restore_name, plans=plans)

        if not preparation.anything_to_delete:
            logger.info("No existing resources found that need deletion.")
        elif not options.auto_delete:
            self._transition(RestoreState.AWAITING_CONFIRMATION)
            logger.warning("The above resources must be deleted for volume data restore to work.")
            logger.warning("StatefulSets/Deployments/DaemonSets/Jobs will be recreated by Velero with restored data.")
            if not self.confirm("Delete resources and proceed with restore?"):
                logger.info("Aborted.")
                self._transition(RestoreState.DONE)
                return RestoreOutcome(
                    state=self.state, exit_code=0, restore_name=restore_name, plans=plans, aborted=True
                )

        results: list[TeardownResult] = []
        if plans:
            self._transition(RestoreState.TEARING_DOWN)
            logger.log(STEP, "Deleting existing resources...")
            results = [self.executor.execute(plan) for plan in plans]
            failed = [result for result in results if not result.success]
            for result in failed:
                logger.error("Teardown failed for %s/%s: %s", result.namespace, result.claim_name, result.message)
            if failed and len(failed) == len(results):
                return self._fail(
                    "No claim could be prepared for restore",
                    restore_name=restore_name,
                    plans=plans,
                    results=results,
                )

        logger.log(STEP, "Cleaning up old restore objects...")
        for name in self.velero.delete_restores_for_backup(options.backup_name):
            logger.info("  Deleted old restore: %s", name)

        self._transition(RestoreState.INVOKING_RESTORE)
        request = RestoreRequest(
            backup_name=options.backup_name,
            restore_name=restore_name,
            namespace=options.namespace,
            restore_volumes=True,
            wait=options.wait,
        )
        logger.log(STEP, "Creating restore: %s", restore_name)
        logger.info("Running: %s", equivalent_restore_command(request, velero_namespace=self.velero.namespace))
        try:
            self.velero.create_restore(request)
        except RestoreCreationError as error:
            logger.error(str(error))
            return self._fail(str(error), restore_name=restore_name, plans=plans, results=results)

        self._transition(RestoreState.REPORTING)
        if not options.wait:
            logger.info("Restore started. Monitor with:")
            self.emit(f"  velero restore describe {restore_name} -n {self.velero.namespace}")
            self.emit(f"  kubectl get podvolumerestores -n {self.velero.namespace} -w")
            self._transition(RestoreState.DONE)
            return RestoreOutcome(
                state=self.state, exit_code=0, restore_name=restore_name, plans=plans, teardown_results=results
            )

        try:
            self.velero.wait_for_restore(restore_name, self.config.velero_wait_policy())
            summary = self.velero.describe_restore(restore_name)
        except VeleroError as error:
            logger.error(str(error))
            return self._fail(str(error), restore_name=restore_name, plans=plans, results=results)

        logger.log(STEP, "Restore Results")
        self.render_restore_summary(summary)
        self._render_restored_resources(self._report_namespaces(options, preparation))

        if summary is None or summary.phase != SUCCESS_PHASE:
            phase = summary.phase if summary else "unknown"
            return self._fail(
                f"Restore {restore_name} finished in phase {phase}",
                restore_name=restore_name,
                plans=plans,
                results=results,
                summary=summary,
            )

        logger.info("Done!")
        self._transition(RestoreState.DONE)
        return RestoreOutcome(
            state=self.state,
            exit_code=0,
            restore_name=restore_name,
            plans=plans,
            teardown_results=results,
            summary=summary,
        )

    def render_backup_contents(self, contents: BackupContents) -> None:
        logger.info("Backup '%s' contains:", contents.backup_name)
        if contents.namespaces_with_claims:
            self.emit("Namespaces with PVCs:")
            for namespace in contents.namespaces_with_claims:
                self.emit(f"  - {namespace}")
                records = [record for record in contents.pod_volume_backups if record.namespace == namespace]
                for record in records[:MAX_REPORT_ROWS]:
                    self.emit(f"      {record.namespace}/{record.pod_name}: {record.volume}")
        self.emit("Pod Volume Backups (FSB data):")
        if not contents.pod_volume_backups:
            self.emit("  None found")
        for record in contents.pod_volume_backups:
            self.emit(f"  {record.namespace}/{record.pod_name} volume={record.volume} phase={record.phase}")

    def render_restore_summary(self, summary: RestoreSummary | None) -> None:
        if summary is None:
            logger.warning("Restore object not found")
            return
        self.emit(f"Phase: {summary.phase}")
        if summary.total_items is not None:
            self.emit(f"Items restored: {summary.items_restored or 0} of {summary.total_items}")
        self.emit(f"Warnings: {summary.warnings}")
        self.emit(f"Errors: {summary.errors}")
        if summary.failure_reason:
            self.emit(f"Failure reason: {summary.failure_reason}")
        for validation_error in summary.validation_errors:
            self.emit(f"Validation error: {validation_error}")

        logger.info("Volume Data Restores:")
        if not summary.pod_volume_restores:
            self.emit("  None found")
        for record in summary.pod_volume_restores:
            progress = ""
            if record.total_bytes:
                progress = f" ({record.bytes_done or 0}/{record.total_bytes} bytes)"
            self.emit(f"  {record.namespace}/{record.pod_name} volume={record.volume} phase={record.phase}{progress}")

    def _claims_in_scope(self, namespace: str, claim_name: str | None) -> list[str]:
        if claim_name:
            return [claim_name]
        try:
            return [claim.name for claim in self.gateway.list_claims(namespace)]
        except ApiException as error:
            logger.warning("Unable to list PVCs in namespace %s: %s", namespace, error_message(error))
            return []

    def _render_plans(self, plans: list[TeardownPlan], *, dry_run: bool) -> None:
        current_namespace: str | None = None
        for plan in plans:
            if plan.namespace != current_namespace:
                current_namespace = plan.namespace
                self.emit(f"Namespace: {plan.namespace}")
            if dry_run:
                for line in self.executor.preview(plan):
                    self.emit(f"    {line}")
                continue
            self.emit(f"  PVC: {plan.claim_name}")
            for kind in DELETION_ORDER:
                for name in plan.names(kind):
                    self.emit(f"    -> {kind.value}: {name}")

    def _report_namespaces(self, options: RestoreOptions, preparation: RestorePreparation) -> tuple[str, ...]:
        if options.namespace:
            return (options.namespace,)
        return preparation.namespaces

    def _render_restored_resources(self, namespaces: tuple[str, ...]) -> None:
        logger.info("Restored PVCs:")
        for namespace in namespaces:
            try:
                claims = self.gateway.list_claims(namespace)
            except ApiException as error:
                logger.warning("Unable to list PVCs in namespace %s: %s", namespace, error_message(error))
                continue
            for claim in claims[:MAX_REPORT_ROWS]:
                self.emit(f"  {claim.namespace}/{claim.name} {claim.phase} {claim.bound_volume or ''}".rstrip())

        logger.info("Restored Pods:")
        for namespace in namespaces:
            try:
                pods = self.gateway.list_pods(namespace)
            except ApiException as error:
                logger.warning("Unable to list pods in namespace %s: %s", namespace, error_message(error))
                continue
            for pod in pods[:MAX_REPORT_ROWS]:
                phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
                self.emit(f"  {namespace}/{pod.metadata.name} {phase}")

    def _transition(self, state: RestoreState) -> None:
        logger.debug("Restore state %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(
        self,
        message: str,
        *,
        restore_name: str | None,
        plans: list[TeardownPlan] | None = None,
        results: list[TeardownResult] | None = None,
        summary: RestoreSummary | None = None,
    ) -> RestoreOutcome:
        self._transition(RestoreState.FAILED)
        return RestoreOutcome(
            state=self.state,
            exit_code=1,
            restore_name=restore_name,
            plans=plans or [],
            teardown_results=results or [],
            summary=summary,
            message=message,
        )
