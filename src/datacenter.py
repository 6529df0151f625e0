#!/usr/bin/env python3
# src/datacenter.py
"""
CassandraDatacenter custom resource model.

This module provides:
- Parsing of the CassandraDatacenter custom resource into a typed view
- Naming and labelling conventions for every derived object
- Derivation of the Service and StatefulSet bodies managed by the operator
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# CRD configuration
CRD_GROUP = os.environ.get("CRD_GROUP", "cassandra.datastax.com")
CRD_VERSION = os.environ.get("CRD_VERSION", "v1alpha2")
CRD_PLURAL = os.environ.get("CRD_PLURAL", "cassandradatacenters")
CRD_KIND = "CassandraDatacenter"

SERVER_IMAGE = os.environ.get(
    "SERVER_IMAGE", "datastax/cassandra-mgmtapi-3_11_6:v0.1.0"
)

FINALIZER_NAME = "finalizer.cassandra.datastax.com"

# Labels
CLUSTER_LABEL = "cassandra.datastax.com/cluster"
DATACENTER_LABEL = "cassandra.datastax.com/datacenter"
RACK_LABEL = "cassandra.datastax.com/rack"
SEED_NODE_LABEL = "cassandra.datastax.com/seed-node"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "cassandra-dc-operator"

TEMPLATE_HASH_ANNOTATION = "cassandra.datastax.com/template-hash"
ZONE_LABEL = "topology.kubernetes.io/zone"

DEFAULT_RACK_NAME = "default"
SERVER_DATA_VOLUME = "server-data"
SERVER_CONTAINER = "cassandra"

# Ports
INTERNODE_PORT = 7000
CQL_PORT = 9042
MGMT_API_PORT = 8080


class InvalidDatacenterError(ValueError):
    """The declared CassandraDatacenter cannot be reconciled as written."""


@dataclass(frozen=True)
class Rack:
    name: str
    zone: str = ""


@dataclass
class CassandraDatacenter:
    """Typed view over a CassandraDatacenter object as returned by the API."""

    name: str
    namespace: str
    cluster_name: str
    size: int
    racks: List[Rack]
    server_image: str = SERVER_IMAGE
    uid: str = ""
    generation: int = 0
    resource_version: str = ""
    storage_claim_spec: Dict[str, Any] = field(default_factory=dict)
    management_api_auth: Dict[str, Any] = field(default_factory=dict)
    resources: Dict[str, Any] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    status: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any], strict: bool = True) -> "CassandraDatacenter":
        """Parse an API object.

        With ``strict=False`` only clusterName is required, which is enough to
        select and clean up the datacenter's storage while it is being deleted.
        """
        metadata = obj.get("metadata", {}) or {}
        spec = obj.get("spec", {}) or {}

        name = metadata.get("name", "")
        cluster_name = spec.get("clusterName", "")
        if not cluster_name:
            raise InvalidDatacenterError(f"{name}: spec.clusterName is required")

        try:
            size = int(spec.get("size", 0))
        except (TypeError, ValueError):
            if strict:
                raise InvalidDatacenterError(f"{name}: spec.size must be an integer")
            size = 0
        if size < 0:
            if strict:
                raise InvalidDatacenterError(f"{name}: spec.size must not be negative")
            size = 0

        racks = [
            Rack(name=rack.get("name", ""), zone=rack.get("zone", "") or "")
            for rack in spec.get("racks") or []
        ]
        if not racks:
            racks = [Rack(name=DEFAULT_RACK_NAME)]
        rack_names = [rack.name for rack in racks]
        if strict and any(not rack_name for rack_name in rack_names):
            raise InvalidDatacenterError(f"{name}: every rack needs a name")
        if strict and len(set(rack_names)) != len(rack_names):
            raise InvalidDatacenterError(f"{name}: rack names must be unique")

        storage_config = spec.get("storageConfig", {}) or {}

        return cls(
            name=name,
            namespace=metadata.get("namespace", ""),
            cluster_name=cluster_name,
            size=size,
            racks=racks,
            server_image=spec.get("serverImage") or SERVER_IMAGE,
            uid=metadata.get("uid", ""),
            generation=int(metadata.get("generation", 0) or 0),
            resource_version=metadata.get("resourceVersion", ""),
            storage_claim_spec=storage_config.get("cassandraDataVolumeClaimSpec", {}) or {},
            management_api_auth=spec.get("managementApiAuth", {}) or {},
            resources=spec.get("resources", {}) or {},
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            status=obj.get("status", {}) or {},
        )

    # Lifecycle

    @property
    def has_finalizer(self) -> bool:
        return FINALIZER_NAME in self.finalizers

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    # Naming

    def statefulset_name(self, rack: Rack) -> str:
        return f"{self.cluster_name}-{self.name}-{rack.name}-sts"

    def service_name(self) -> str:
        return f"{self.cluster_name}-{self.name}-service"

    def seed_service_name(self) -> str:
        return f"{self.cluster_name}-seed-service"

    def all_pods_service_name(self) -> str:
        return f"{self.cluster_name}-{self.name}-all-pods-service"

    # Labels

    def cluster_labels(self) -> Dict[str, str]:
        """Labels for objects shared by every datacenter of the cluster."""
        return {CLUSTER_LABEL: self.cluster_name, MANAGED_BY_LABEL: MANAGED_BY_VALUE}

    def datacenter_labels(self) -> Dict[str, str]:
        return {
            CLUSTER_LABEL: self.cluster_name,
            DATACENTER_LABEL: self.name,
            MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        }

    def rack_labels(self, rack: Rack) -> Dict[str, str]:
        labels = self.datacenter_labels()
        labels[RACK_LABEL] = rack.name
        return labels

    def label_selector(self) -> str:
        return f"{CLUSTER_LABEL}={self.cluster_name},{DATACENTER_LABEL}={self.name}"

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CRD_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def rack_by_name(self, rack_name: str) -> Optional[Rack]:
        for rack in self.racks:
            if rack.name == rack_name:
                return rack
        return None


def pvc_name_for_pod(pod_name: str) -> str:
    return f"{SERVER_DATA_VOLUME}-{pod_name}"


# -----------------------------
# Services
# -----------------------------


def _service_body(
    dc: CassandraDatacenter,
    name: str,
    selector: Dict[str, str],
    ports: List[Dict[str, Any]],
    publish_not_ready: bool,
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": name,
            "namespace": dc.namespace,
            "labels": labels if labels is not None else dc.datacenter_labels(),
            "ownerReferences": [dc.owner_reference()],
        },
        "spec": {
            "clusterIP": "None",
            "selector": selector,
            "ports": ports,
            "publishNotReadyAddresses": publish_not_ready,
        },
    }


def _port(name: str, port: int) -> Dict[str, Any]:
    return {"name": name, "port": port, "targetPort": port, "protocol": "TCP"}


def build_service_bodies(dc: CassandraDatacenter) -> Dict[str, Dict[str, Any]]:
    """Derive every Service the datacenter needs, keyed by name."""
    dc_selector = {CLUSTER_LABEL: dc.cluster_name, DATACENTER_LABEL: dc.name}
    seed_selector = {CLUSTER_LABEL: dc.cluster_name, SEED_NODE_LABEL: "true"}

    bodies = [
        _service_body(
            dc,
            dc.service_name(),
            dc_selector,
            [_port("native", CQL_PORT), _port("mgmt-api", MGMT_API_PORT)],
            publish_not_ready=False,
        ),
        _service_body(
            dc,
            dc.seed_service_name(),
            seed_selector,
            [_port("internode", INTERNODE_PORT)],
            publish_not_ready=True,
            labels=dc.cluster_labels(),
        ),
        _service_body(
            dc,
            dc.all_pods_service_name(),
            dc_selector,
            [_port("internode", INTERNODE_PORT), _port("native", CQL_PORT)],
            publish_not_ready=True,
        ),
    ]
    return {body["metadata"]["name"]: body for body in bodies}


# -----------------------------
# StatefulSets
# -----------------------------


def _server_env(dc: CassandraDatacenter, rack: Rack) -> List[Dict[str, Any]]:
    env = [
        {"name": "CASSANDRA_CLUSTER_NAME", "value": dc.cluster_name},
        {"name": "CASSANDRA_DC", "value": dc.name},
        {"name": "CASSANDRA_RACK", "value": rack.name},
        {"name": "CASSANDRA_ENDPOINT_SNITCH", "value": "GossipingPropertyFileSnitch"},
        {
            "name": "CASSANDRA_SEEDS",
            "value": f"{dc.seed_service_name()}.{dc.namespace}.svc",
        },
    ]
    if "manual" in dc.management_api_auth:
        env.append({"name": "MGMT_API_TLS_CERT_DIR", "value": "/management-api-certs"})
    return env


def build_pod_template(dc: CassandraDatacenter, rack: Rack) -> Dict[str, Any]:
    container: Dict[str, Any] = {
        "name": SERVER_CONTAINER,
        "image": dc.server_image,
        "env": _server_env(dc, rack),
        "ports": [
            {"name": "internode", "containerPort": INTERNODE_PORT},
            {"name": "native", "containerPort": CQL_PORT},
            {"name": "mgmt-api", "containerPort": MGMT_API_PORT},
        ],
        "readinessProbe": {
            "httpGet": {"path": "/api/v0/probes/readiness", "port": MGMT_API_PORT},
            "initialDelaySeconds": 20,
            "periodSeconds": 10,
        },
        "volumeMounts": [
            {"name": SERVER_DATA_VOLUME, "mountPath": "/var/lib/cassandra"}
        ],
    }
    if dc.resources:
        container["resources"] = dc.resources

    pod_spec: Dict[str, Any] = {"containers": [container]}

    manual = dc.management_api_auth.get("manual")
    if manual:
        pod_spec["volumes"] = [
            {
                "name": "mgmt-api-certs",
                "secret": {"secretName": manual.get("clientSecretName", "")},
            }
        ]
        container["volumeMounts"].append(
            {"name": "mgmt-api-certs", "mountPath": "/management-api-certs"}
        )

    if rack.zone:
        pod_spec["affinity"] = {
            "nodeAffinity": {
                "requiredDuringSchedulingIgnoredDuringExecution": {
                    "nodeSelectorTerms": [
                        {
                            "matchExpressions": [
                                {
                                    "key": ZONE_LABEL,
                                    "operator": "In",
                                    "values": [rack.zone],
                                }
                            ]
                        }
                    ]
                }
            }
        }

    return {"metadata": {"labels": dc.rack_labels(rack)}, "spec": pod_spec}


def template_hash(template: Dict[str, Any]) -> str:
    """Stable hash of a pod template, used for drift detection."""
    content = json.dumps(template, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def build_statefulset_body(
    dc: CassandraDatacenter, rack: Rack, replicas: int
) -> Dict[str, Any]:
    template = build_pod_template(dc, rack)
    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": dc.statefulset_name(rack),
            "namespace": dc.namespace,
            "labels": dc.rack_labels(rack),
            "annotations": {TEMPLATE_HASH_ANNOTATION: template_hash(template)},
            "ownerReferences": [dc.owner_reference()],
        },
        "spec": {
            "replicas": replicas,
            "serviceName": dc.all_pods_service_name(),
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": dc.rack_labels(rack)},
            "template": template,
            "volumeClaimTemplates": [
                {
                    "metadata": {
                        "name": SERVER_DATA_VOLUME,
                        "labels": dc.rack_labels(rack),
                    },
                    "spec": dc.storage_claim_spec,
                }
            ],
        },
    }
