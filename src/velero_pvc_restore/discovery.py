from __future__ import annotations

from typing import Any, Iterator
import logging
import re

from .k8s import REPLICA_SET, ClusterGateway, error_message, owner_reference, pods_using_claim
from .models import TeardownPlan, WorkloadKind

logger = logging.getLogger(__name__)

_KINDS_BY_NAME = {kind.value: kind for kind in WorkloadKind}


def candidate_pod_names(gateway: ClusterGateway, namespace: str, claim_name: str) -> Iterator[str]:
    """Yield the names of pods in ``namespace`` that mount ``claim_name``.

    The pod list is fetched when iteration starts, so every call observes
    current cluster state. A failed listing yields nothing.
    """
    try:
        pods = gateway.list_pods(namespace)
    except Exception as error:  # pylint: disable=broad-except
        logger.debug("Listing pods in %s failed during discovery: %s", namespace, error_message(error))
        return
    for pod in pods_using_claim(pods, claim_name):
        name = pod.metadata.name if pod.metadata else None
        if name:
            yield name


def resolve_pod_owner(gateway: ClusterGateway, namespace: str, pod_name: str) -> tuple[str, str] | None:
    """Return the top-level (kind, name) that owns a pod, or None when unknown.

    Pods without owner references are reported as ``("Pod", pod_name)``. A
    ReplicaSet owner is followed one hop to its Deployment because Deployments
    never own pods directly.
    """
    try:
        pod = gateway.read(WorkloadKind.POD.value, namespace, pod_name)
        if pod is None:
            return None

        ref = owner_reference(pod.metadata.owner_references if pod.metadata else None)
        if ref is None:
            return WorkloadKind.POD.value, pod_name

        if ref.kind == REPLICA_SET:
            replica_set = gateway.read(REPLICA_SET, namespace, ref.name)
            deployment = _deployment_owner(replica_set)
            if deployment:
                return WorkloadKind.DEPLOYMENT.value, deployment

        return ref.kind, ref.name
    except Exception as error:  # pylint: disable=broad-except
        logger.debug("Owner lookup for pod %s/%s failed: %s", namespace, pod_name, error_message(error))
        return None


def template_stateful_sets(gateway: ClusterGateway, namespace: str, claim_name: str) -> list[str]:
    """StatefulSets whose claim templates would have produced ``claim_name``.

    StatefulSet claims are named ``<template>-<statefulset>-<ordinal>``, so the
    match holds even before a pod for that ordinal has been scheduled.
    """
    try:
        stateful_sets = gateway.list_stateful_sets(namespace)
    except Exception as error:  # pylint: disable=broad-except
        logger.debug("Listing StatefulSets in %s failed during discovery: %s", namespace, error_message(error))
        return []

    matches: list[str] = []
    for stateful_set in stateful_sets:
        name = stateful_set.metadata.name if stateful_set.metadata else None
        if not name:
            continue
        for template in _claim_template_names(stateful_set):
            if claim_matches_template(claim_name, template=template, stateful_set=name):
                matches.append(name)
                break
    return matches


def claim_matches_template(claim_name: str, *, template: str, stateful_set: str) -> bool:
    pattern = rf"{re.escape(template)}-{re.escape(stateful_set)}-[0-9]+"
    return re.fullmatch(pattern, claim_name) is not None


def claim_exists(gateway: ClusterGateway, namespace: str, claim_name: str) -> bool:
    try:
        return gateway.read_claim(namespace, claim_name) is not None
    except Exception as error:  # pylint: disable=broad-except
        logger.debug("Reading PVC %s/%s failed during discovery: %s", namespace, claim_name, error_message(error))
        return False


def build_teardown_plan(gateway: ClusterGateway, namespace: str, claim_name: str) -> TeardownPlan:
    if not namespace:
        raise ValueError("namespace must be non-empty")

    plan = TeardownPlan(namespace=namespace, claim_name=claim_name)
    if not claim_exists(gateway, namespace, claim_name):
        logger.debug("PVC %s/%s not found; nothing depends on it", namespace, claim_name)
        return plan

    for pod_name in candidate_pod_names(gateway, namespace, claim_name):
        owner = resolve_pod_owner(gateway, namespace, pod_name)
        if owner is None:
            continue
        kind_name, owner_name = owner
        kind = _KINDS_BY_NAME.get(kind_name)
        if kind is None:
            logger.debug("Skipping %s/%s owner %s/%s: not a deletable workload", namespace, pod_name, kind_name, owner_name)
            continue
        plan.add(kind, owner_name)

    for stateful_set in template_stateful_sets(gateway, namespace, claim_name):
        plan.add(WorkloadKind.STATEFUL_SET, stateful_set)

    return plan


def _deployment_owner(replica_set: Any | None) -> str | None:
    if replica_set is None or not replica_set.metadata:
        return None
    for ref in replica_set.metadata.owner_references or []:
        if ref.kind == WorkloadKind.DEPLOYMENT.value:
            return ref.name
    return None


def _claim_template_names(stateful_set: Any) -> list[str]:
    spec = getattr(stateful_set, "spec", None)
    names: list[str] = []
    for template in getattr(spec, "volume_claim_templates", None) or []:
        metadata = getattr(template, "metadata", None)
        name = getattr(metadata, "name", None)
        if name:
            names.append(name)
    return names
