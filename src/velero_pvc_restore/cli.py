"""Command-line entry point for Velero PVC backup and restore.

Restoring file-system-backed volume data requires the workloads that own a PVC
and the PVC itself to be deleted so that Velero can recreate them. ``restore``
discovers those owners, tears them down in a safe order, and triggers the
Velero restore; ``backup`` creates a Velero backup with file-system backup on.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable
import functools
import logging

import click
from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from .backup import BackupCoordinator, BackupOptions, BackupValidationError, validate_backup_options
from .config import RestoreConfig
from .k8s import (
    ClusterGateway,
    KubernetesAuthenticationError,
    KubernetesClients,
    error_message,
    load_kubernetes_clients,
)
from .logging_config import setup_logging
from .orchestrator import RestoreCoordinator, RestoreOptions, RestoreValidationError, validate_options
from .velero import VeleroClient, VeleroError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionSettings:
    kubeconfig_path: str | None
    context: str | None
    in_cluster: bool
    config: RestoreConfig


def _connect(settings: ConnectionSettings) -> tuple[ClusterGateway, VeleroClient]:
    clients: KubernetesClients = load_kubernetes_clients(
        kubeconfig_path=settings.kubeconfig_path,
        context=settings.context,
        in_cluster=settings.in_cluster,
    )
    velero = VeleroClient(
        custom_api=clients.custom_api,
        apps_api=clients.apps_api,
        namespace=settings.config.velero_namespace,
        clock=settings.config.clock,
    )
    return ClusterGateway(clients), velero


def _connect_or_exit(ctx: click.Context) -> tuple[ClusterGateway, VeleroClient]:
    try:
        return _connect(ctx.obj["settings"])
    except KubernetesAuthenticationError as error:
        logger.error(str(error))
        ctx.exit(1)


def _confirm(prompt: str, *, default: bool) -> bool:
    return click.confirm(prompt, default=default)


def _exit_on_api_failure(command: Callable[..., None]) -> Callable[..., None]:
    """Report unreachable or failing API servers as an error line and exit 1."""

    @functools.wraps(command)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            command(*args, **kwargs)
        except (ApiException, HTTPError) as error:
            logger.error("Unable to reach the Kubernetes API: %s", error_message(error))
            click.get_current_context().exit(1)

    return wrapper


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="velero-pvc-restore")
@click.option("--kubeconfig", envvar="KUBECONFIG", default=None, help="Path to the kubeconfig file")
@click.option("--context", "kube_context", default=None, help="Kubeconfig context to use")
@click.option("--in-cluster", is_flag=True, help="Use the pod service account instead of a kubeconfig")
@click.option("--velero-namespace", default=None, help="Namespace Velero runs in (default: $VELERO_NAMESPACE or storage)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    kubeconfig: str | None,
    kube_context: str | None,
    in_cluster: bool,
    velero_namespace: str | None,
    verbose: bool,
) -> None:
    """Back up and restore PVC data with Velero file-system backups."""
    setup_logging(verbose=verbose)
    config = RestoreConfig()
    if velero_namespace:
        config = replace(config, velero_namespace=velero_namespace)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = ConnectionSettings(
        kubeconfig_path=kubeconfig,
        context=kube_context,
        in_cluster=in_cluster,
        config=config,
    )


@cli.command()
@click.option("--backup-name", "-b", default=None, help="Backup name to restore from (required)")
@click.option("--all", "-a", "all_namespaces", is_flag=True, help="Restore ALL namespaces from backup")
@click.option("--namespace", "-n", default=None, help="Restore specific namespace only")
@click.option("--pvc", "-p", "claim_name", default=None, help="Restore specific PVC only (requires -n)")
@click.option("--restore-name", "-r", default=None, help="Custom restore name (default: auto-generated)")
@click.option("--delete-existing", "-d", is_flag=True, help="Auto-delete existing resources (no prompt)")
@click.option("--wait", "-w", is_flag=True, help="Wait for restore to complete")
@click.option("--list-backups", "-l", is_flag=True, help="List available backups")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted, don't execute")
@click.pass_context
@_exit_on_api_failure
def restore(
    ctx: click.Context,
    backup_name: str | None,
    all_namespaces: bool,
    namespace: str | None,
    claim_name: str | None,
    restore_name: str | None,
    delete_existing: bool,
    wait: bool,
    list_backups: bool,
    dry_run: bool,
) -> None:
    """Restore PVCs with their data from a Velero backup.

    Existing StatefulSets/Deployments and PVCs must be deleted for Velero FSB
    to restore volume data; this command handles that.

    \b
    Examples:
      velero-pvc restore -l
      velero-pvc restore -b my-backup -a -d -w
      velero-pvc restore -b my-backup -n default -p data-pg-0 -w
      velero-pvc restore -b my-backup -n default --dry-run
    """
    settings: ConnectionSettings = ctx.obj["settings"]
    if list_backups:
        gateway, velero = _connect_or_exit(ctx)
        coordinator = RestoreCoordinator(gateway=gateway, velero=velero, config=settings.config)
        try:
            coordinator.show_available_backups()
        except VeleroError as error:
            logger.error(str(error))
            ctx.exit(1)
        return

    options = RestoreOptions(
        backup_name=backup_name or "",
        all_namespaces=all_namespaces,
        namespace=namespace,
        claim_name=claim_name,
        restore_name=restore_name,
        auto_delete=delete_existing,
        wait=wait,
        dry_run=dry_run,
    )
    try:
        validate_options(options)
    except RestoreValidationError as error:
        logger.error(str(error))
        click.echo(ctx.get_help())
        ctx.exit(1)

    gateway, velero = _connect_or_exit(ctx)
    coordinator = RestoreCoordinator(
        gateway=gateway,
        velero=velero,
        config=settings.config,
        confirm=lambda prompt: _confirm(prompt, default=False),
    )
    outcome = coordinator.run(options)
    ctx.exit(outcome.exit_code)


@cli.command()
@click.option("--all", "-a", "all_namespaces", is_flag=True, help="Backup all PVCs in ALL namespaces")
@click.option("--namespace", "-n", default=None, help="Backup PVCs from specific namespace")
@click.option("--backup-name", "-b", default=None, help="Custom backup name (default: auto-generated)")
@click.option("--ttl", "-t", default=None, help="Backup TTL (default: $BACKUP_TTL or 720h)")
@click.option("--storage-location", default=None, help="Backup storage location (default: $BACKUP_STORAGE_LOCATION or default)")
@click.option("--selector", "-l", default=None, help="Label selector for resources (e.g. app=postgres)")
@click.option("--exclude-namespaces", "-e", default="", help="Comma-separated namespaces to exclude (with -a)")
@click.option("--wait", "-w", is_flag=True, help="Wait for backup to complete")
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@_exit_on_api_failure
def backup(
    ctx: click.Context,
    all_namespaces: bool,
    namespace: str | None,
    backup_name: str | None,
    ttl: str | None,
    storage_location: str | None,
    selector: str | None,
    exclude_namespaces: str,
    wait: bool,
    assume_yes: bool,
) -> None:
    """Back up PVCs with their data using Velero file-system backup.

    \b
    Examples:
      velero-pvc backup -a -w
      velero-pvc backup -a -e kube-system,storage -w
      velero-pvc backup -n default -l app=postgres -w
    """
    settings: ConnectionSettings = ctx.obj["settings"]
    options = BackupOptions(
        all_namespaces=all_namespaces,
        namespace=namespace,
        backup_name=backup_name,
        ttl=ttl,
        storage_location=storage_location,
        selector=selector,
        exclude_namespaces=tuple(value.strip() for value in exclude_namespaces.split(",") if value.strip()),
        wait=wait,
        assume_yes=assume_yes,
    )
    try:
        validate_backup_options(options)
    except BackupValidationError as error:
        logger.error(str(error))
        click.echo(ctx.get_help())
        ctx.exit(1)

    gateway, velero = _connect_or_exit(ctx)
    coordinator = BackupCoordinator(
        gateway=gateway,
        velero=velero,
        config=settings.config,
        confirm=lambda prompt: _confirm(prompt, default=True),
    )
    outcome = coordinator.run(options)
    ctx.exit(outcome.exit_code)


@cli.command("backups")
@click.pass_context
@_exit_on_api_failure
def list_backups_command(ctx: click.Context) -> None:
    """List available Velero backups."""
    settings: ConnectionSettings = ctx.obj["settings"]
    gateway, velero = _connect_or_exit(ctx)
    coordinator = RestoreCoordinator(gateway=gateway, velero=velero, config=settings.config)
    try:
        coordinator.show_available_backups()
    except VeleroError as error:
        logger.error(str(error))
        ctx.exit(1)


@cli.command("pvcs")
@click.option("--namespace", "-n", default=None, help="Only list PVCs in this namespace")
@click.pass_context
@_exit_on_api_failure
def list_claims_command(ctx: click.Context, namespace: str | None) -> None:
    """List PVCs and their bound volumes."""
    gateway, _ = _connect_or_exit(ctx)
    try:
        claims = gateway.list_claims(namespace)
    except ApiException as error:
        logger.error("Unable to list PVCs: %s", error_message(error))
        ctx.exit(1)
    logger.info("PVCs %s:", f"in namespace {namespace}" if namespace else "across all namespaces")
    for claim in claims:
        click.echo(f"  {claim.namespace:<24} {claim.name:<40} {claim.phase:<10} {claim.bound_volume or ''}".rstrip())
    logger.info("Total PVCs: %d", len(claims))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
