#!/usr/bin/env python3
# src/service_reconciler.py
"""
Service topology reconciliation.

Every Service is derived from the CassandraDatacenter. Missing services are
created and drifted ones are patched in place. Services are never deleted
here; the owner reference hands that to the garbage collector.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

from datacenter import build_service_bodies
from k8s_utils import intersect_name_set, subtract_name_set
from observation import ReconciliationContext

logger = logging.getLogger("cassandra-operator.services")


@dataclass
class ServiceOutcome:
    created: List[str] = field(default_factory=list)
    patched: List[str] = field(default_factory=list)

    @property
    def mutated(self) -> bool:
        return bool(self.created or self.patched)


def _observed_ports(service) -> set:
    ports = (service.spec.ports if service.spec else None) or []
    return {(p.name, p.port, p.protocol or "TCP") for p in ports}


def _desired_ports(body: Dict[str, Any]) -> set:
    return {
        (p["name"], p["port"], p.get("protocol", "TCP"))
        for p in body["spec"]["ports"]
    }


def service_drift_patch(desired: Dict[str, Any], observed) -> Optional[Dict[str, Any]]:
    """Return a patch for the fields that drifted, or None when converged.

    Only labels, selector, ports and publishNotReadyAddresses are compared.
    clusterIP is immutable and is left alone. The patch is applied as a
    strategic merge, so unwanted selector keys are nulled out and the port
    list carries a replace directive instead of being merged by port number.
    """
    desired_labels = desired["metadata"]["labels"]
    desired_spec = desired["spec"]
    observed_labels = observed.metadata.labels or {}
    spec = observed.spec

    drifted = (
        any(observed_labels.get(k) != v for k, v in desired_labels.items())
        or (spec.selector or {}) != desired_spec["selector"]
        or _observed_ports(observed) != _desired_ports(desired)
        or bool(spec.publish_not_ready_addresses)
        != desired_spec["publishNotReadyAddresses"]
    )
    if not drifted:
        return None

    selector: Dict[str, Optional[str]] = dict(desired_spec["selector"])
    for key in subtract_name_set(spec.selector or {}, selector):
        selector[key] = None

    return {
        "metadata": {"labels": desired_labels},
        "spec": {
            "selector": selector,
            "ports": [{"$patch": "replace"}] + desired_spec["ports"],
            "publishNotReadyAddresses": desired_spec["publishNotReadyAddresses"],
        },
    }


def reconcile_services(ctx: ReconciliationContext) -> ServiceOutcome:
    """Create or patch services so they match the declared topology.

    Any API failure other than a create racing with an existing object
    propagates to the caller.
    """
    dc = ctx.datacenter
    desired = build_service_bodies(dc)
    observed = ctx.observation.services
    outcome = ServiceOutcome()

    for name in sorted(subtract_name_set(desired, observed)):
        try:
            ctx.core_api.create_namespaced_service(
                namespace=dc.namespace, body=desired[name]
            )
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Service {name} already exists, will diff on next pass")
                continue
            raise
        logger.info(f"Created service {dc.namespace}/{name}")
        outcome.created.append(name)

    for name in sorted(intersect_name_set(desired, observed)):
        patch = service_drift_patch(desired[name], observed[name])
        if patch is None:
            continue
        ctx.core_api.patch_namespaced_service(
            name=name, namespace=dc.namespace, body=patch
        )
        logger.info(f"Patched drifted service {dc.namespace}/{name}")
        outcome.patched.append(name)

    return outcome
