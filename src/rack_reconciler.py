#!/usr/bin/env python3
# src/rack_reconciler.py
"""
Per-rack reconciliation of StatefulSets, member pods and their storage.

This module provides:
- Deterministic split of the datacenter size across racks
- A pure planner that picks at most one rack mutation per reconcile
- Node replacement for members stuck on an unusable node
- Seed labelling for the seed service

Racks are mutated one at a time, in declaration order. A rack that is still
settling from an earlier mutation is skipped, and nothing is mutated while
every rack is settling.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from kubernetes.client.rest import ApiException

from datacenter import (
    SEED_NODE_LABEL,
    TEMPLATE_HASH_ANNOTATION,
    CassandraDatacenter,
    Rack,
    build_pod_template,
    build_statefulset_body,
    pvc_name_for_pod,
    template_hash,
)
from k8s_utils import (
    SELECTED_NODE_ANNOTATION,
    filter_pods_with_label,
    filter_with_fn,
    get_pod_name_set,
    get_pvc_selected_node_name,
    intersect_name_set,
    is_node_excluded,
    is_pod_ready,
    is_pod_unschedulable,
    parse_taint_list,
    subtract_name_set,
)
from observation import ClusterObservation, ReconciliationContext

logger = logging.getLogger("cassandra-operator.racks")

# 0 means a single step covers the whole delta
MAX_SCALE_STEP = int(os.environ.get("MAX_SCALE_STEP", "0"))
REPLACEMENT_TAINTS = parse_taint_list(
    os.environ.get("REPLACEMENT_TAINTS", "node.kubernetes.io/unschedulable:NoSchedule")
)
MAX_SEEDS = int(os.environ.get("MAX_SEEDS", "3"))


class ActionKind(Enum):
    CREATE = "create"
    SCALE = "scale"
    UPDATE = "update"


@dataclass(frozen=True)
class RackAction:
    rack: str
    kind: ActionKind
    replicas: int
    delta: int = 0


@dataclass(frozen=True)
class RackState:
    name: str
    desired: int
    exists: bool = False
    replicas: int = 0
    ready: int = 0
    pending: bool = False
    template_drift: bool = False


@dataclass
class RackOutcome:
    action: Optional[RackAction] = None
    replaced: List[str] = field(default_factory=list)
    seeds_changed: List[str] = field(default_factory=list)
    states: List[RackState] = field(default_factory=list)
    converged: bool = False

    @property
    def mutated(self) -> bool:
        return bool(self.action or self.replaced or self.seeds_changed)


# -----------------------------
# Pure planning
# -----------------------------


def split_members(size: int, rack_count: int) -> List[int]:
    """Spread ``size`` members over racks, remainder to the earliest racks."""
    if rack_count <= 0:
        return []
    base, remainder = divmod(size, rack_count)
    return [base + 1 if i < remainder else base for i in range(rack_count)]


def _step_towards(current: int, desired: int, max_step: int) -> int:
    if max_step <= 0:
        return desired
    if desired > current:
        return min(desired, current + max_step)
    return max(desired, current - max_step)


def plan_rack_action(
    states: Sequence[RackState], max_step: int = 0
) -> Optional[RackAction]:
    """Pick the single rack mutation for this reconcile, if any.

    Racks that are still settling are skipped, and nothing is planned when
    every rack is. Otherwise the first settled rack in declaration order that
    needs work gets exactly one action.
    """
    if all(state.pending for state in states):
        return None

    for state in states:
        if state.pending:
            continue
        if not state.exists:
            target = _step_towards(0, state.desired, max_step)
            return RackAction(state.name, ActionKind.CREATE, target, target)
        if state.replicas != state.desired:
            target = _step_towards(state.replicas, state.desired, max_step)
            return RackAction(
                state.name, ActionKind.SCALE, target, target - state.replicas
            )
        if state.template_drift:
            return RackAction(state.name, ActionKind.UPDATE, state.replicas)
    return None


# -----------------------------
# Observation -> rack state
# -----------------------------


def _expected_member_names(sts_name: str, replicas: int) -> set:
    return {f"{sts_name}-{ordinal}" for ordinal in range(replicas)}


def build_rack_state(
    dc: CassandraDatacenter,
    rack: Rack,
    desired: int,
    observation: ClusterObservation,
) -> RackState:
    sts_name = dc.statefulset_name(rack)
    sts = observation.statefulsets.get(sts_name)
    if sts is None:
        return RackState(name=rack.name, desired=desired)

    replicas = sts.spec.replicas or 0
    pods = observation.pods_for_rack(rack)
    expected = _expected_member_names(sts_name, replicas)
    observed = get_pod_name_set(pods)
    ready = get_pod_name_set(filter_with_fn(pods, is_pod_ready))

    stable = intersect_name_set(expected, ready)
    leftovers = subtract_name_set(observed, expected)

    generation = sts.metadata.generation or 0
    observed_generation = (sts.status.observed_generation if sts.status else 0) or 0

    pending = (
        len(stable) != replicas
        or bool(leftovers)
        or observed_generation < generation
    )

    annotations = sts.metadata.annotations or {}
    drift = annotations.get(TEMPLATE_HASH_ANNOTATION) != template_hash(
        build_pod_template(dc, rack)
    )

    return RackState(
        name=rack.name,
        desired=desired,
        exists=True,
        replicas=replicas,
        ready=len(stable),
        pending=pending,
        template_drift=drift,
    )


def build_rack_states(
    dc: CassandraDatacenter, observation: ClusterObservation
) -> List[RackState]:
    split = split_members(dc.size, len(dc.racks))
    return [
        build_rack_state(dc, rack, desired, observation)
        for rack, desired in zip(dc.racks, split)
    ]


# -----------------------------
# Node replacement
# -----------------------------


def _read_node(ctx: ReconciliationContext, node_name: str):
    try:
        return ctx.core_api.read_node(name=node_name)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


def replace_stuck_members(ctx: ReconciliationContext, taints=None) -> List[str]:
    """Release members stuck on an excluded node so they can be rescheduled.

    For each unschedulable member whose PVC is pinned to a node that is gone,
    cordoned or tainted for exclusion, the PVC's selected-node annotation is
    cleared before the pod is deleted. Members on a viable node are left
    alone. Returns the names of the replaced pods.
    """
    if taints is None:
        taints = REPLACEMENT_TAINTS
    dc = ctx.datacenter
    observation = ctx.observation
    replaced = []

    for pod in filter_with_fn(observation.pods, is_pod_unschedulable):
        pod_name = pod.metadata.name
        pvc = observation.pvc_by_name(pvc_name_for_pod(pod_name))
        if pvc is None:
            logger.debug(f"Unschedulable pod {pod_name} has no PVC yet")
            continue

        node_name = get_pvc_selected_node_name(pvc)
        if not node_name:
            continue

        node = _read_node(ctx, node_name)
        if node is not None and not is_node_excluded(node, taints):
            logger.debug(
                f"Pod {pod_name} unschedulable but node {node_name} is still viable, waiting"
            )
            continue

        reason = "gone" if node is None else "excluded"
        logger.info(
            f"Replacing pod {pod_name}: node {node_name} is {reason}, releasing PVC {pvc.metadata.name}"
        )
        ctx.core_api.patch_namespaced_persistent_volume_claim(
            name=pvc.metadata.name,
            namespace=dc.namespace,
            body={"metadata": {"annotations": {SELECTED_NODE_ANNOTATION: None}}},
        )
        try:
            ctx.core_api.delete_namespaced_pod(name=pod_name, namespace=dc.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
        replaced.append(pod_name)

    return replaced


# -----------------------------
# Seed labelling
# -----------------------------


def desired_seed_names(dc: CassandraDatacenter, observation: ClusterObservation) -> set:
    """Ordinal zero of each rack, in rack order, capped at MAX_SEEDS."""
    observed = get_pod_name_set(observation.pods)
    seeds = []
    for rack in dc.racks:
        candidate = f"{dc.statefulset_name(rack)}-0"
        if candidate in observed:
            seeds.append(candidate)
    return set(seeds[:MAX_SEEDS])


def label_seed_pods(ctx: ReconciliationContext) -> List[str]:
    dc = ctx.datacenter
    observation = ctx.observation
    desired = desired_seed_names(dc, observation)
    current = get_pod_name_set(
        filter_pods_with_label(observation.pods, SEED_NODE_LABEL, "true")
    )

    changed = []
    for name in sorted(subtract_name_set(desired, current)):
        ctx.core_api.patch_namespaced_pod(
            name=name,
            namespace=dc.namespace,
            body={"metadata": {"labels": {SEED_NODE_LABEL: "true"}}},
        )
        logger.info(f"Labelled {name} as seed")
        changed.append(name)
    for name in sorted(subtract_name_set(current, desired)):
        ctx.core_api.patch_namespaced_pod(
            name=name,
            namespace=dc.namespace,
            body={"metadata": {"labels": {SEED_NODE_LABEL: None}}},
        )
        logger.info(f"Removed seed label from {name}")
        changed.append(name)
    return changed


# -----------------------------
# Applying the plan
# -----------------------------


def apply_rack_action(ctx: ReconciliationContext, action: RackAction):
    dc = ctx.datacenter
    rack = dc.rack_by_name(action.rack)
    sts_name = dc.statefulset_name(rack)

    if action.kind is ActionKind.CREATE:
        ctx.apps_api.create_namespaced_stateful_set(
            namespace=dc.namespace,
            body=build_statefulset_body(dc, rack, action.replicas),
        )
        logger.info(f"Created StatefulSet {sts_name} with {action.replicas} replicas")

    elif action.kind is ActionKind.SCALE:
        ctx.apps_api.patch_namespaced_stateful_set(
            name=sts_name,
            namespace=dc.namespace,
            body={"spec": {"replicas": action.replicas}},
        )
        logger.info(
            f"Scaled StatefulSet {sts_name} to {action.replicas} replicas (delta {action.delta:+d})"
        )

    elif action.kind is ActionKind.UPDATE:
        observed = ctx.observation.statefulsets[sts_name]
        body = build_statefulset_body(dc, rack, action.replicas)
        body["metadata"]["resourceVersion"] = observed.metadata.resource_version
        # volumeClaimTemplates are immutable, keep whatever is live
        if observed.spec.volume_claim_templates:
            body["spec"]["volumeClaimTemplates"] = (
                ctx.apps_api.api_client.sanitize_for_serialization(
                    observed.spec.volume_claim_templates
                )
            )
        ctx.apps_api.replace_namespaced_stateful_set(
            name=sts_name, namespace=dc.namespace, body=body
        )
        logger.info(f"Updated pod template of StatefulSet {sts_name}")


def reconcile_racks(ctx: ReconciliationContext, max_step: Optional[int] = None) -> RackOutcome:
    """Run node replacement, seed labelling and at most one rack mutation.

    Write failures propagate to the caller. Waiting for a rack to settle is
    reported through ``converged=False`` and is never an error.
    """
    if max_step is None:
        max_step = MAX_SCALE_STEP
    dc = ctx.datacenter
    outcome = RackOutcome()

    outcome.replaced = replace_stuck_members(ctx)
    if outcome.replaced:
        return outcome

    outcome.seeds_changed = label_seed_pods(ctx)

    states = build_rack_states(dc, ctx.observation)
    outcome.states = states
    outcome.action = plan_rack_action(states, max_step)
    if outcome.action is not None:
        apply_rack_action(ctx, outcome.action)
        return outcome

    settling = [state.name for state in states if state.pending]
    if settling:
        logger.debug(f"Waiting for racks to settle: {', '.join(settling)}")
        return outcome

    outcome.converged = all(state.ready == state.desired for state in states)
    return outcome
