from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import pytest

from velero_pvc_restore.config import Clock, RestoreConfig
from velero_pvc_restore.k8s import PERSISTENT_VOLUME, PERSISTENT_VOLUME_CLAIM, REPLICA_SET
from velero_pvc_restore.models import VolumeClaim

MUTATING_OPERATIONS = frozenset({"delete", "clear_finalizers"})


class FakeClock:
    def __init__(self) -> None:
        self.current = 0.0
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds

    def clock(self) -> Clock:
        return Clock(now=self.now, sleep=self.sleep)


class FakeCluster:
    """In-memory stand-in for ``ClusterGateway``.

    Graceful deletes of keys in ``stuck`` are accepted but leave the object in
    place; a forced delete (grace period 0) or clearing finalizers releases
    them. Keys in ``undeletable`` never go away. Deleting a controller removes
    the pods it owns.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], Any] = {}
        self.controllers: dict[tuple[str, str, str], tuple[str, str]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.stuck: set[tuple[str, str, str]] = set()
        self.undeletable: set[tuple[str, str, str]] = set()
        self.failures: dict[tuple[str, str], Exception] = {}

    def add_pod(
        self,
        namespace: str,
        name: str,
        *,
        claims: tuple[str, ...] = (),
        owner: tuple[str, str] | None = None,
        controller: tuple[str, str] | None = None,
    ) -> Any:
        owner_refs = []
        if owner is not None:
            owner_refs.append(SimpleNamespace(kind=owner[0], name=owner[1], controller=True))
        pod = SimpleNamespace(
            metadata=SimpleNamespace(namespace=namespace, name=name, owner_references=owner_refs),
            spec=SimpleNamespace(
                volumes=[
                    SimpleNamespace(persistent_volume_claim=SimpleNamespace(claim_name=claim)) for claim in claims
                ]
            ),
            status=SimpleNamespace(phase="Running"),
        )
        key = ("Pod", namespace, name)
        self.objects[key] = pod
        top = controller or owner
        if top is not None:
            self.controllers[key] = top
        return pod

    def add_replica_set(self, namespace: str, name: str, *, deployment: str | None) -> Any:
        owner_refs = []
        if deployment:
            owner_refs.append(SimpleNamespace(kind="Deployment", name=deployment, controller=True))
        replica_set = SimpleNamespace(
            metadata=SimpleNamespace(namespace=namespace, name=name, owner_references=owner_refs)
        )
        self.objects[(REPLICA_SET, namespace, name)] = replica_set
        if deployment:
            self.controllers[(REPLICA_SET, namespace, name)] = ("Deployment", deployment)
        return replica_set

    def add_workload(self, kind: str, namespace: str, name: str) -> Any:
        workload = SimpleNamespace(metadata=SimpleNamespace(namespace=namespace, name=name, owner_references=[]))
        self.objects[(kind, namespace, name)] = workload
        return workload

    def add_stateful_set(self, namespace: str, name: str, *, templates: tuple[str, ...] = ()) -> Any:
        stateful_set = SimpleNamespace(
            metadata=SimpleNamespace(namespace=namespace, name=name, owner_references=[]),
            spec=SimpleNamespace(
                volume_claim_templates=[SimpleNamespace(metadata=SimpleNamespace(name=template)) for template in templates]
            ),
        )
        self.objects[("StatefulSet", namespace, name)] = stateful_set
        return stateful_set

    def add_claim(self, namespace: str, name: str, *, volume: str | None = None, phase: str = "Bound") -> Any:
        claim = SimpleNamespace(
            metadata=SimpleNamespace(namespace=namespace, name=name),
            spec=SimpleNamespace(volume_name=volume),
            status=SimpleNamespace(phase=phase),
        )
        self.objects[(PERSISTENT_VOLUME_CLAIM, namespace, name)] = claim
        return claim

    def add_volume(self, name: str, *, phase: str = "Bound") -> Any:
        volume = SimpleNamespace(metadata=SimpleNamespace(name=name), status=SimpleNamespace(phase=phase))
        self.objects[(PERSISTENT_VOLUME, "", name)] = volume
        return volume

    def has(self, kind: str, namespace: str, name: str) -> bool:
        return (kind, namespace, name) in self.objects

    def mutations(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def deleted_kinds(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "delete"]

    # ClusterGateway surface

    def read(self, kind: str, namespace: str, name: str) -> Any | None:
        self._maybe_fail("read", kind)
        return self.objects.get((kind, namespace, name))

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
        self.calls.append(("delete", kind, namespace, name, grace_period_seconds, propagation_policy))
        self._maybe_fail("delete", kind)
        key = (kind, namespace, name)
        if key not in self.objects:
            return False
        if key in self.undeletable:
            return True
        if key in self.stuck and grace_period_seconds != 0:
            return True
        self._remove(key)
        return True

    def clear_finalizers(self, kind: str, namespace: str, name: str) -> bool:
        self.calls.append(("clear_finalizers", kind, namespace, name))
        key = (kind, namespace, name)
        if key not in self.objects:
            return False
        self.stuck.discard(key)
        return True

    def list_pods(self, namespace: str) -> list[Any]:
        self._maybe_fail("list", "Pod")
        return [obj for (kind, ns, _), obj in self.objects.items() if kind == "Pod" and ns == namespace]

    def list_stateful_sets(self, namespace: str) -> list[Any]:
        self._maybe_fail("list", "StatefulSet")
        return [obj for (kind, ns, _), obj in self.objects.items() if kind == "StatefulSet" and ns == namespace]

    def list_claims(self, namespace: str | None = None) -> list[VolumeClaim]:
        self._maybe_fail("list", PERSISTENT_VOLUME_CLAIM)
        claims = [
            self._claim(obj)
            for (kind, ns, _), obj in self.objects.items()
            if kind == PERSISTENT_VOLUME_CLAIM and (namespace is None or ns == namespace)
        ]
        return sorted(claims, key=lambda claim: (claim.namespace, claim.name))

    def read_claim(self, namespace: str, name: str) -> VolumeClaim | None:
        item = self.read(PERSISTENT_VOLUME_CLAIM, namespace, name)
        return self._claim(item) if item is not None else None

    def volume_phase(self, name: str) -> str | None:
        volume = self.read(PERSISTENT_VOLUME, "", name)
        return volume.status.phase if volume is not None else None

    def _remove(self, key: tuple[str, str, str]) -> None:
        self.objects.pop(key, None)
        self.stuck.discard(key)
        owner = (key[0], key[2])
        dependents = [child for child, parent in self.controllers.items() if parent == owner and child[1] == key[1]]
        for child in dependents:
            self.controllers.pop(child, None)
            if child in self.objects and child not in self.undeletable and child not in self.stuck:
                self._remove(child)

    def _maybe_fail(self, operation: str, kind: str) -> None:
        error = self.failures.get((operation, kind))
        if error is not None:
            raise error

    @staticmethod
    def _claim(item: Any) -> VolumeClaim:
        return VolumeClaim(
            namespace=item.metadata.namespace,
            name=item.metadata.name,
            phase=item.status.phase,
            bound_volume=item.spec.volume_name,
        )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def restore_config(fake_clock: FakeClock) -> RestoreConfig:
    return RestoreConfig(
        velero_namespace="storage",
        workload_delete_timeout_seconds=10,
        pod_delete_timeout_seconds=6,
        pod_grace_period_seconds=30,
        claim_delete_timeout_seconds=4,
        pod_termination_timeout_seconds=6,
        poll_interval_seconds=2,
        velero_wait_timeout_seconds=60,
        backup_ttl="720h",
        backup_storage_location="default",
        clock=fake_clock.clock(),
    )
