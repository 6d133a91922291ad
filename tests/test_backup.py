from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from velero_pvc_restore.backup import (
    BackupCoordinator,
    BackupOptions,
    BackupValidationError,
    default_backup_name,
    parse_label_selector,
    validate_backup_options,
)
from velero_pvc_restore.models import BackupContents, BackupSummary, PodVolumeRecord
from velero_pvc_restore.velero import BackupCreationError


def _velero(*, installed: bool = True, phase: str = "Completed") -> Mock:
    velero = Mock()
    velero.namespace = "storage"
    velero.is_installed.return_value = installed
    velero.wait_for_backup.return_value = BackupSummary(name="b1", phase=phase)
    velero.describe_backup_contents.return_value = BackupContents(
        backup_name="b1",
        namespaces_with_claims=("db",),
        pod_volume_backups=(PodVolumeRecord(namespace="db", pod_name="pg-0", volume="data", phase="Completed"),),
    )
    return velero


@pytest.mark.parametrize(
    ("options", "message"),
    [
        (BackupOptions(), "Either -a"),
        (BackupOptions(all_namespaces=True, namespace="db"), "both -a and -n"),
        (BackupOptions(namespace="db", exclude_namespaces=("kube-system",)), "only applies together with -a"),
        (BackupOptions(namespace="db", selector="app in (pg)"), "Unsupported label selector"),
    ],
)
def test_validate_backup_options_rejects_bad_combinations(options: BackupOptions, message: str) -> None:
    with pytest.raises(BackupValidationError, match=message):
        validate_backup_options(options)


def test_parse_label_selector_with_multiple_terms_returns_match_labels() -> None:
    assert parse_label_selector("app=postgres, app.kubernetes.io/part-of=db") == {
        "app": "postgres",
        "app.kubernetes.io/part-of": "db",
    }
    assert parse_label_selector(None) == {}
    assert parse_label_selector("  ") == {}


def test_default_backup_name_reflects_scope() -> None:
    moment = datetime(2024, 1, 1, 2, 0, 0, tzinfo=UTC)

    assert default_backup_name("db", moment) == "db-pvc-backup-20240101020000"
    assert default_backup_name(None, moment) == "all-namespaces-pvc-backup-20240101020000"


def test_build_request_falls_back_to_configured_ttl_and_location(cluster, restore_config) -> None:
    coordinator = BackupCoordinator(gateway=cluster, velero=_velero(), config=restore_config)

    request = coordinator.build_request(BackupOptions(namespace="db", backup_name="b1", selector="app=pg"))

    assert request.ttl == "720h"
    assert request.storage_location == "default"
    assert request.label_selector == {"app": "pg"}
    assert request.included_namespaces == ["db"]
    assert request.default_volumes_to_fs_backup is True


def test_run_excludes_namespaces_from_claim_listing(cluster, restore_config) -> None:
    cluster.add_claim("db", "data-pg-0")
    cluster.add_claim("kube-system", "etcd-data")
    lines: list[str] = []
    velero = _velero()
    coordinator = BackupCoordinator(gateway=cluster, velero=velero, config=restore_config, emit=lines.append)

    outcome = coordinator.run(
        BackupOptions(all_namespaces=True, backup_name="b1", exclude_namespaces=("kube-system",), assume_yes=True)
    )

    assert outcome.exit_code == 0
    assert [claim.name for claim in outcome.claims] == ["data-pg-0"]
    assert "  Excluded Namespaces: kube-system" in lines
    request = velero.create_backup.call_args.args[0]
    assert request.exclude_namespaces == ("kube-system",)
    velero.wait_for_backup.assert_not_called()


def test_run_without_velero_installed_fails_before_creating(cluster, restore_config) -> None:
    velero = _velero(installed=False)
    coordinator = BackupCoordinator(gateway=cluster, velero=velero, config=restore_config)

    outcome = coordinator.run(BackupOptions(namespace="db", assume_yes=True))

    assert outcome.exit_code == 1
    assert "storage" in outcome.message
    velero.create_backup.assert_not_called()


def test_run_with_refused_confirmation_aborts(cluster, restore_config) -> None:
    velero = _velero()
    coordinator = BackupCoordinator(
        gateway=cluster,
        velero=velero,
        config=restore_config,
        confirm=lambda _prompt: False,
    )

    outcome = coordinator.run(BackupOptions(namespace="db"))

    assert outcome.aborted is True
    assert outcome.exit_code == 0
    velero.create_backup.assert_not_called()


def test_run_with_rejected_backup_returns_failure(cluster, restore_config) -> None:
    velero = _velero()
    velero.create_backup.side_effect = BackupCreationError(command="velero backup create b1", reason="denied")
    coordinator = BackupCoordinator(gateway=cluster, velero=velero, config=restore_config)

    outcome = coordinator.run(BackupOptions(namespace="db", backup_name="b1", assume_yes=True))

    assert outcome.exit_code == 1
    assert "velero backup create b1" in outcome.message


@pytest.mark.parametrize(("phase", "exit_code"), [("Completed", 0), ("PartiallyFailed", 1)])
def test_run_with_wait_maps_final_phase_to_exit_code(cluster, restore_config, phase: str, exit_code: int) -> None:
    velero = _velero(phase=phase)
    lines: list[str] = []
    coordinator = BackupCoordinator(gateway=cluster, velero=velero, config=restore_config, emit=lines.append)

    outcome = coordinator.run(BackupOptions(namespace="db", backup_name="b1", wait=True, assume_yes=True))

    assert outcome.exit_code == exit_code
    velero.wait_for_backup.assert_called_once_with("b1", restore_config.velero_wait_policy())
    assert "  db/pg-0 volume=data phase=Completed" in lines
