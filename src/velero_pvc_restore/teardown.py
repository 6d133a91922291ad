from __future__ import annotations

from dataclasses import dataclass
import logging

from kubernetes.client import ApiException

from .config import RestoreConfig, RetryPolicy
from .k8s import PERSISTENT_VOLUME, PERSISTENT_VOLUME_CLAIM, ClusterGateway, error_message, pods_using_claim
from .models import DELETION_ORDER, TeardownPlan, TeardownResult, Workload, WorkloadKind

logger = logging.getLogger(__name__)

STUCK_VOLUME_PHASES = frozenset({"Released", "Failed"})


class DeletionTimeoutError(RuntimeError):
    """Raised when a graceful delete does not finish within its policy."""


@dataclass(frozen=True)
class _DeleteSettings:
    label: str
    propagation_policy: str | None
    grace_period: bool
    controller: bool


_DELETE_SETTINGS: dict[WorkloadKind, _DeleteSettings] = {
    WorkloadKind.STATEFUL_SET: _DeleteSettings("StatefulSet", "Foreground", grace_period=False, controller=True),
    WorkloadKind.DEPLOYMENT: _DeleteSettings("Deployment", "Foreground", grace_period=False, controller=True),
    WorkloadKind.DAEMON_SET: _DeleteSettings("DaemonSet", "Foreground", grace_period=False, controller=True),
    WorkloadKind.JOB: _DeleteSettings("Job", "Foreground", grace_period=False, controller=False),
    WorkloadKind.POD: _DeleteSettings("standalone Pod", None, grace_period=True, controller=False),
}

if set(_DELETE_SETTINGS) != set(WorkloadKind):
    raise RuntimeError("every WorkloadKind needs delete settings")


class TeardownExecutor:
    def __init__(self, *, gateway: ClusterGateway, config: RestoreConfig) -> None:
        self.gateway = gateway
        self.config = config

    def preview(self, plan: TeardownPlan) -> list[str]:
        lines = [f"Would delete {kind.value}: {name}" for kind in DELETION_ORDER for name in plan.names(kind)]
        lines.append(f"Would delete PVC: {plan.claim_name}")
        lines.append("Would delete associated PV (if stuck)")
        return lines

    def execute(self, plan: TeardownPlan) -> TeardownResult:
        deleted: list[Workload] = []
        forced: list[str] = []
        for workload in plan.ordered_workloads():
            if self.delete_workload(workload):
                forced.append(f"{workload.kind.value}/{workload.name}")
            deleted.append(workload)

        if not self.wait_for_claim_release(plan.namespace, plan.claim_name):
            forced.extend(f"Pod/{name}" for name in self.force_delete_remaining_pods(plan.namespace, plan.claim_name))

        self.config.clock.sleep(self.config.poll_interval_seconds)

        success = self.delete_claim(plan.namespace, plan.claim_name)
        message = "" if success else f"PVC {plan.namespace}/{plan.claim_name} still exists after forced deletion"
        return TeardownResult(
            namespace=plan.namespace,
            claim_name=plan.claim_name,
            success=success,
            deleted=tuple(deleted),
            forced=tuple(forced),
            message=message,
        )

    def delete_workload(self, workload: Workload) -> bool:
        """Delete one workload; returns True when the forced path was needed."""
        settings = _DELETE_SETTINGS[workload.kind]
        kind = workload.kind.value
        logger.info("  Deleting %s: %s", settings.label, workload.name)
        try:
            issued = self.gateway.delete(
                kind,
                workload.namespace,
                workload.name,
                grace_period_seconds=self.config.pod_grace_period_seconds if settings.grace_period else None,
                propagation_policy=settings.propagation_policy,
            )
            if not issued:
                return False
            self._wait_until_absent(kind, workload.namespace, workload.name, self._workload_policy(settings))
            return False
        except (ApiException, DeletionTimeoutError) as error:
            logger.warning(
                "  %s %s did not delete cleanly (%s), forcing deletion",
                settings.label,
                workload.name,
                error_message(error),
            )
        self._force_delete(kind, workload.namespace, workload.name)
        return True

    def wait_for_claim_release(self, namespace: str, claim_name: str) -> bool:
        logger.info("  Waiting for pods using PVC '%s' to terminate...", claim_name)
        released = self.config.pod_termination_policy().poll(
            lambda: not self._pods_using_claim(namespace, claim_name),
            self.config.clock,
        )
        if released:
            logger.info("  All pods using PVC terminated")
        else:
            logger.warning("  Timeout waiting for pods to terminate, will force delete")
        return released

    def force_delete_remaining_pods(self, namespace: str, claim_name: str) -> list[str]:
        remaining = self._pods_using_claim(namespace, claim_name)
        for pod_name in remaining:
            logger.warning("  Force deleting stuck Pod: %s", pod_name)
            self._clear_finalizers(WorkloadKind.POD.value, namespace, pod_name)
            self._force_delete(WorkloadKind.POD.value, namespace, pod_name)
        return remaining

    def delete_claim(self, namespace: str, claim_name: str) -> bool:
        """Delete a PVC, escalating to finalizer removal when it is stuck.

        Absence is success, so calling this for a claim that is already gone
        returns True. Returns False only when the claim still exists after the
        forced path.
        """
        try:
            claim = self.gateway.read_claim(namespace, claim_name)
        except ApiException as error:
            logger.warning("  Unable to read PVC %s before deletion: %s", claim_name, error_message(error))
            bound_volume = None
        else:
            if claim is None:
                return True
            bound_volume = claim.bound_volume

        logger.info("  Deleting PVC: %s", claim_name)
        try:
            self.gateway.delete(PERSISTENT_VOLUME_CLAIM, namespace, claim_name)
            self._wait_until_absent(PERSISTENT_VOLUME_CLAIM, namespace, claim_name, self.config.claim_delete_policy())
            return True
        except (ApiException, DeletionTimeoutError) as error:
            logger.warning("  PVC deletion stuck (%s), removing finalizers...", error_message(error))

        self._clear_finalizers(PERSISTENT_VOLUME_CLAIM, namespace, claim_name)
        self._force_delete(PERSISTENT_VOLUME_CLAIM, namespace, claim_name)
        self.config.clock.sleep(self.config.poll_interval_seconds)

        if bound_volume:
            self._cleanup_stuck_volume(bound_volume)

        try:
            still_present = self.gateway.exists(PERSISTENT_VOLUME_CLAIM, namespace, claim_name)
        except ApiException as error:
            logger.error("  Unable to confirm PVC %s deletion: %s", claim_name, error_message(error))
            return False
        if still_present:
            logger.error("  Failed to delete PVC: %s", claim_name)
            return False
        return True

    def _cleanup_stuck_volume(self, volume_name: str) -> None:
        try:
            phase = self.gateway.volume_phase(volume_name)
        except ApiException as error:
            logger.warning("  Unable to read PV %s: %s", volume_name, error_message(error))
            return
        if phase not in STUCK_VOLUME_PHASES:
            return
        logger.warning("  Cleaning up PV: %s (status: %s)", volume_name, phase)
        self._clear_finalizers(PERSISTENT_VOLUME, "", volume_name)
        self._force_delete(PERSISTENT_VOLUME, "", volume_name)

    def _pods_using_claim(self, namespace: str, claim_name: str) -> list[str]:
        try:
            pods = self.gateway.list_pods(namespace)
        except ApiException as error:
            logger.debug("Listing pods in %s failed: %s", namespace, error_message(error))
            return []
        return [pod.metadata.name for pod in pods_using_claim(pods, claim_name) if pod.metadata and pod.metadata.name]

    def _wait_until_absent(self, kind: str, namespace: str, name: str, policy: RetryPolicy) -> None:
        if not policy.poll(lambda: not self.gateway.exists(kind, namespace, name), self.config.clock):
            raise DeletionTimeoutError(f"{kind} {namespace}/{name} still present after {policy.timeout_seconds:g}s")

    def _workload_policy(self, settings: _DeleteSettings) -> RetryPolicy:
        if settings.controller:
            return self.config.controller_delete_policy()
        return self.config.pod_delete_policy()

    def _force_delete(self, kind: str, namespace: str, name: str) -> None:
        try:
            self.gateway.delete(kind, namespace, name, grace_period_seconds=0, propagation_policy="Background")
        except ApiException as error:
            logger.warning("  Forced delete of %s %s failed: %s", kind, name, error_message(error))

    def _clear_finalizers(self, kind: str, namespace: str, name: str) -> None:
        try:
            self.gateway.clear_finalizers(kind, namespace, name)
        except ApiException as error:
            logger.warning("  Removing finalizers from %s %s failed: %s", kind, name, error_message(error))
