#!/usr/bin/env python3
# src/finalizer.py
"""
Cooperative deletion of CassandraDatacenter objects.

The gate is a two-axis state machine over (finalizer present, deletion
timestamp set). Exactly one transition is applied per reconcile:

    (absent,  not deleting) -> add finalizer, persist, retry soon
    (present, not deleting) -> pass through to normal reconciliation
    (present, deleting)     -> delete every PVC, remove finalizer, stop
    (absent,  deleting)     -> nothing left to do, stop

PVCs are always deleted before the finalizer is removed so the object can
never disappear while its storage is still around.
"""

import logging
from enum import Enum

from kubernetes.client.rest import ApiException

from datacenter import CRD_GROUP, CRD_PLURAL, CRD_VERSION, FINALIZER_NAME
from observation import ReconciliationContext

logger = logging.getLogger("cassandra-operator.finalizer")


class DeletionState(Enum):
    UNMARKED = "unmarked"
    MARKED = "marked"
    MARKED_DELETING = "marked_deleting"
    UNMARKED_DELETING = "unmarked_deleting"


class DeletionAction(Enum):
    ADD_FINALIZER = "add_finalizer"
    CONTINUE = "continue"
    RELEASE = "release"
    IGNORE = "ignore"


class GateOutcome(Enum):
    PASS = "pass"
    RETRY_SOON = "retry_soon"
    STOP = "stop"


_TRANSITIONS = {
    DeletionState.UNMARKED: DeletionAction.ADD_FINALIZER,
    DeletionState.MARKED: DeletionAction.CONTINUE,
    DeletionState.MARKED_DELETING: DeletionAction.RELEASE,
    DeletionState.UNMARKED_DELETING: DeletionAction.IGNORE,
}


def deletion_state(has_finalizer: bool, deleting: bool) -> DeletionState:
    if deleting:
        return DeletionState.MARKED_DELETING if has_finalizer else DeletionState.UNMARKED_DELETING
    return DeletionState.MARKED if has_finalizer else DeletionState.UNMARKED


def next_deletion_action(state: DeletionState) -> DeletionAction:
    return _TRANSITIONS[state]


def _persist_finalizers(ctx: ReconciliationContext, finalizers: list):
    dc = ctx.datacenter
    body = {
        "metadata": {
            "finalizers": finalizers,
            "resourceVersion": dc.resource_version,
        }
    }
    updated = ctx.custom_objects_api.patch_namespaced_custom_object(
        group=CRD_GROUP,
        version=CRD_VERSION,
        namespace=dc.namespace,
        plural=CRD_PLURAL,
        name=dc.name,
        body=body,
    )
    dc.finalizers = list(finalizers)
    if isinstance(updated, dict):
        dc.resource_version = updated.get("metadata", {}).get(
            "resourceVersion", dc.resource_version
        )


def delete_pvcs(ctx: ReconciliationContext) -> int:
    """Delete every PVC labelled for the datacenter. Failures propagate."""
    dc = ctx.datacenter
    pvcs = ctx.core_api.list_namespaced_persistent_volume_claim(
        namespace=dc.namespace, label_selector=dc.label_selector()
    )
    deleted = 0
    for pvc in pvcs.items:
        name = pvc.metadata.name
        try:
            ctx.core_api.delete_namespaced_persistent_volume_claim(
                name=name, namespace=dc.namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"PVC {name} already gone")
                continue
            logger.warning(f"Failed to delete PVC {name} for {dc.name}: {e}")
            raise
        logger.info(f"Deleted PVC {name} for datacenter {dc.name}")
        deleted += 1
    return deleted


def process_deletion(ctx: ReconciliationContext) -> GateOutcome:
    """Apply the single deletion transition for the current object state."""
    dc = ctx.datacenter
    state = deletion_state(dc.has_finalizer, dc.is_being_deleted)
    action = next_deletion_action(state)
    logger.debug(f"Deletion gate for {dc.name}: state={state.value}, action={action.value}")

    if action is DeletionAction.ADD_FINALIZER:
        _persist_finalizers(ctx, dc.finalizers + [FINALIZER_NAME])
        logger.info(f"Added finalizer to {dc.namespace}/{dc.name}")
        return GateOutcome.RETRY_SOON

    if action is DeletionAction.CONTINUE:
        return GateOutcome.PASS

    if action is DeletionAction.RELEASE:
        deleted = delete_pvcs(ctx)
        remaining = [f for f in dc.finalizers if f != FINALIZER_NAME]
        _persist_finalizers(ctx, remaining)
        logger.info(
            f"Released {dc.namespace}/{dc.name} for deletion after removing {deleted} PVC(s)"
        )
        return GateOutcome.STOP

    return GateOutcome.STOP
