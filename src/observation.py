#!/usr/bin/env python3
# src/observation.py
"""
Observation of the live resources owned by one CassandraDatacenter.

The snapshot is read with one list call per resource kind and is not
transactional. Any API failure aborts gathering so a reconcile never works
against a partial view.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from datacenter import RACK_LABEL, CassandraDatacenter, Rack

logger = logging.getLogger("cassandra-operator.observation")


@dataclass(frozen=True)
class ClusterObservation:
    services: Dict[str, Any] = field(default_factory=dict)
    statefulsets: Dict[str, Any] = field(default_factory=dict)
    pods: List[Any] = field(default_factory=list)
    pvcs: List[Any] = field(default_factory=list)

    def pods_for_rack(self, rack: Rack) -> list:
        return [
            pod
            for pod in self.pods
            if (pod.metadata.labels or {}).get(RACK_LABEL) == rack.name
        ]

    def pvc_by_name(self, name: str):
        for pvc in self.pvcs:
            if pvc.metadata.name == name:
                return pvc
        return None


class ReconciliationContext:
    """Everything a single reconcile needs: API clients and the declared datacenter."""

    def __init__(
        self,
        datacenter: CassandraDatacenter,
        raw: Dict[str, Any],
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        custom_objects_api: client.CustomObjectsApi,
    ):
        self.datacenter = datacenter
        self.raw = raw
        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_objects_api = custom_objects_api
        self._observation: Optional[ClusterObservation] = None

    @property
    def namespace(self) -> str:
        return self.datacenter.namespace

    @property
    def observation(self) -> ClusterObservation:
        if self._observation is None:
            self._observation = self.gather()
        return self._observation

    def refresh(self) -> ClusterObservation:
        self._observation = self.gather()
        return self._observation

    def _read_seed_service(self):
        # shared by every datacenter of the cluster, so not covered by our selector
        try:
            return self.core_api.read_namespaced_service(
                name=self.datacenter.seed_service_name(), namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def gather(self) -> ClusterObservation:
        """Read the current resource graph; ApiException propagates to the caller."""
        selector = self.datacenter.label_selector()

        services = self.core_api.list_namespaced_service(
            namespace=self.namespace, label_selector=selector
        )
        statefulsets = self.apps_api.list_namespaced_stateful_set(
            namespace=self.namespace, label_selector=selector
        )
        pods = self.core_api.list_namespaced_pod(
            namespace=self.namespace, label_selector=selector
        )
        pvcs = self.core_api.list_namespaced_persistent_volume_claim(
            namespace=self.namespace, label_selector=selector
        )

        observed_services = {svc.metadata.name: svc for svc in services.items}
        seed = self._read_seed_service()
        if seed is not None:
            observed_services[seed.metadata.name] = seed

        observation = ClusterObservation(
            services=observed_services,
            statefulsets={sts.metadata.name: sts for sts in statefulsets.items},
            pods=list(pods.items),
            pvcs=list(pvcs.items),
        )
        logger.debug(
            f"Observed {self.datacenter.name}: services={len(observation.services)}, "
            f"statefulsets={len(observation.statefulsets)}, pods={len(observation.pods)}, "
            f"pvcs={len(observation.pvcs)}"
        )
        return observation
