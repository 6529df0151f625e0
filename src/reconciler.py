#!/usr/bin/env python3
# src/reconciler.py
"""
Reconciliation of a single CassandraDatacenter.

Each call runs the deletion gate, then services, then racks, and folds the
outcome into one Verdict for the work queue:

- DONE: converged, nothing to do until the next event
- REQUEUE: something changed or racks are still settling, come back soon
- REQUEUE_ERROR: a step failed, retry with backoff

No step retries on its own. Failures are logged, reflected in the status
subresource and turned into REQUEUE_ERROR here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Gauge

from datacenter import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    CassandraDatacenter,
    InvalidDatacenterError,
)
from finalizer import GateOutcome, process_deletion
from observation import ReconciliationContext
from rack_reconciler import RackOutcome, reconcile_racks
from service_reconciler import ServiceOutcome, reconcile_services

logger = logging.getLogger("cassandra-operator.reconciler")


class Verdict(Enum):
    DONE = "done"
    REQUEUE = "requeue"
    REQUEUE_ERROR = "requeue_error"


# -----------------------------
# Prometheus Metrics
# -----------------------------
reconcile_total = Counter(
    "cassandra_operator_reconcile_total",
    "Total number of reconciliations by verdict",
    ["verdict"],
)
mutations_total = Counter(
    "cassandra_operator_mutations_total",
    "Total number of write operations issued by the reconciler",
    ["kind"],
)
rack_ready_members = Gauge(
    "cassandra_operator_rack_ready_members",
    "Ready members per rack",
    ["namespace", "datacenter", "rack"],
)


@dataclass
class ReconcileReport:
    verdict: Verdict
    gate: Optional[GateOutcome] = None
    services: Optional[ServiceOutcome] = None
    racks: Optional[RackOutcome] = None
    error: Optional[Exception] = None


def calculate_reconciliation_actions(
    ctx: ReconciliationContext,
    gate: Callable[[ReconciliationContext], GateOutcome] = process_deletion,
    services: Callable[[ReconciliationContext], ServiceOutcome] = reconcile_services,
    racks: Callable[[ReconciliationContext], RackOutcome] = reconcile_racks,
) -> ReconcileReport:
    """Sequence the deletion gate, services and racks into one verdict."""
    dc = ctx.datacenter
    report = ReconcileReport(verdict=Verdict.REQUEUE_ERROR)

    try:
        report.gate = gate(ctx)
        if report.gate is GateOutcome.STOP:
            report.verdict = Verdict.DONE
            return report
        if report.gate is GateOutcome.RETRY_SOON:
            report.verdict = Verdict.REQUEUE
            return report

        ctx.refresh()
        report.services = services(ctx)
        report.racks = racks(ctx)

    except ApiException as e:
        logger.warning(f"Reconcile of {dc.namespace}/{dc.name} failed, will retry: {e.status} {e.reason}")
        report.error = e
        return report
    except Exception as e:
        logger.exception(f"Unexpected error reconciling {dc.namespace}/{dc.name}: {e}")
        report.error = e
        return report

    if report.services.mutated or report.racks.mutated or not report.racks.converged:
        report.verdict = Verdict.REQUEUE
    else:
        report.verdict = Verdict.DONE
    return report


# -----------------------------
# Status
# -----------------------------


def _condition(
    previous: Dict[str, Dict[str, Any]], cond_type: str, status: bool, reason: str, message: str
) -> Dict[str, Any]:
    value = "True" if status else "False"
    last = previous.get(cond_type, {})
    transition = last.get("lastTransitionTime")
    if last.get("status") != value or not transition:
        transition = datetime.now(timezone.utc).isoformat()
    return {
        "type": cond_type,
        "status": value,
        "reason": reason,
        "message": message,
        "lastTransitionTime": transition,
    }


def error_message(error: Optional[Exception]) -> str:
    """Short form of a reconcile error for the status subresource."""
    if error is None:
        return ""
    if isinstance(error, ApiException):
        return f"{error.status} {error.reason}"
    return str(error)


def build_status(dc: CassandraDatacenter, report: ReconcileReport) -> Dict[str, Any]:
    previous = {c.get("type"): c for c in dc.status.get("conditions", []) or []}
    failed = report.verdict is Verdict.REQUEUE_ERROR
    ready = report.verdict is Verdict.DONE
    reconciling = report.verdict is Verdict.REQUEUE

    if failed:
        reason, message = "ReconcileFailed", error_message(report.error)
    elif reconciling and report.racks and report.racks.mutated:
        reason, message = "RackMutated", "Applied a change, waiting for it to settle"
    elif reconciling:
        reason, message = "Converging", "Waiting for racks to settle"
    else:
        reason, message = "Converged", "All racks have their desired ready members"

    status: Dict[str, Any] = {
        "observedGeneration": dc.generation,
        "lastError": error_message(report.error) if failed else "",
        "conditions": [
            _condition(previous, "Ready", ready, reason, message),
            _condition(previous, "Reconciling", reconciling, reason, message),
            _condition(previous, "Failed", failed, reason, message),
        ],
    }
    if report.racks is not None and report.racks.states:
        status["rackStatuses"] = [
            {"name": s.name, "desiredMembers": s.desired, "readyMembers": s.ready}
            for s in report.racks.states
        ]
    return status


def _status_changed(live: Dict[str, Any], new: Dict[str, Any]) -> bool:
    return any(live.get(key) != value for key, value in new.items())


# -----------------------------
# Entry point
# -----------------------------


class DatacenterReconciler:
    """Fetches a CassandraDatacenter by name and reconciles it."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        custom_objects_api: client.CustomObjectsApi,
        steps: Optional[Dict[str, Callable]] = None,
    ):
        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_objects_api = custom_objects_api
        self._steps = steps or {}

    def reconcile(self, namespace: str, name: str) -> Verdict:
        verdict = self._reconcile(namespace, name)
        reconcile_total.labels(verdict=verdict.value).inc()
        return verdict

    def _reconcile(self, namespace: str, name: str) -> Verdict:
        try:
            raw = self.custom_objects_api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"CassandraDatacenter {namespace}/{name} not found, nothing to do")
                return Verdict.DONE
            logger.warning(f"Failed to read CassandraDatacenter {namespace}/{name}: {e}")
            return Verdict.REQUEUE_ERROR
        except Exception as e:
            logger.error(f"Unexpected error reading CassandraDatacenter {namespace}/{name}: {e}")
            return Verdict.REQUEUE_ERROR

        # storage cleanup must not depend on the rest of the spec being valid
        deleting = bool((raw.get("metadata") or {}).get("deletionTimestamp"))
        try:
            dc = CassandraDatacenter.from_dict(raw, strict=not deleting)
        except InvalidDatacenterError as e:
            logger.error(f"Refusing to reconcile {namespace}/{name}: {e}")
            live = raw.get("status", {}) or {}
            previous = {c.get("type"): c for c in live.get("conditions", []) or []}
            status = {
                "lastError": str(e),
                "conditions": [_condition(previous, "Valid", False, "InvalidSpec", str(e))],
            }
            self._patch_status(namespace, name, live, status)
            return Verdict.DONE

        ctx = ReconciliationContext(
            dc, raw, self.core_api, self.apps_api, self.custom_objects_api
        )
        report = calculate_reconciliation_actions(ctx, **self._steps)
        self._record(dc, report)

        if report.gate is GateOutcome.PASS or (report.gate is None and report.error):
            self._patch_status(namespace, name, dc.status, build_status(dc, report))

        logger.debug(f"Reconciled {namespace}/{name}: verdict={report.verdict.value}")
        return report.verdict

    def _record(self, dc: CassandraDatacenter, report: ReconcileReport):
        if report.services is not None:
            for _ in report.services.created:
                mutations_total.labels(kind="service_create").inc()
            for _ in report.services.patched:
                mutations_total.labels(kind="service_patch").inc()
        if report.racks is not None:
            if report.racks.action is not None:
                mutations_total.labels(kind=f"rack_{report.racks.action.kind.value}").inc()
            for _ in report.racks.replaced:
                mutations_total.labels(kind="member_replace").inc()
            for state in report.racks.states:
                rack_ready_members.labels(
                    namespace=dc.namespace, datacenter=dc.name, rack=state.name
                ).set(state.ready)

    def _patch_status(
        self, namespace: str, name: str, live: Dict[str, Any], status: Dict[str, Any]
    ):
        if not _status_changed(live, status):
            return
        try:
            self.custom_objects_api.patch_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
                body={"status": status},
            )
        except ApiException as e:
            logger.warning(f"Failed to update status of {namespace}/{name}: {e}")
