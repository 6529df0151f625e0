#!/usr/bin/env python3
# src/k8s_utils.py
"""
Kubernetes helper functions for the Cassandra datacenter operator.

This module provides:
- Name set algebra used to diff desired and observed identities
- Predicates and filters over nodes, pods and persistent volume claims
- Deployment environment helpers (watch namespace, operator namespace, run mode)
"""

import logging
import os
from typing import Callable, Iterable, List, Optional, Set, Tuple, TypeVar

logger = logging.getLogger("cassandra-operator.k8sutil")

T = TypeVar("T")

SELECTED_NODE_ANNOTATION = "volume.kubernetes.io/selected-node"

# ForceRunModeEnv forces the operator into local or cluster mode
FORCE_RUN_MODE_ENV = "OSDK_FORCE_RUN_MODE"
LOCAL_RUN_MODE = "local"
CLUSTER_RUN_MODE = "cluster"

# Empty value means the operator watches all namespaces
WATCH_NAMESPACE_ENV = "WATCH_NAMESPACE"

SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"


class NamespaceNotFoundError(Exception):
    """A namespace could not be found for the current environment."""

    def __init__(self, message: str = "namespace not found for current environment"):
        super().__init__(message)


class RunLocalError(Exception):
    """Raised by helpers that only work when running inside the cluster."""

    def __init__(self, message: str = "operator run mode forced to local"):
        super().__init__(message)


class WatchNamespaceNotSetError(Exception):
    def __init__(self, message: str = f"{WATCH_NAMESPACE_ENV} must be set"):
        super().__init__(message)


# -----------------------------
# Name set helpers
# -----------------------------


def union_name_set(a: Iterable[str], b: Iterable[str]) -> Set[str]:
    return set(a) | set(b)


def subtract_name_set(a: Iterable[str], b: Iterable[str]) -> Set[str]:
    """Names in ``a`` that are not in ``b``."""
    return set(a) - set(b)


def intersect_name_set(a: Iterable[str], b: Iterable[str]) -> Set[str]:
    return set(a) & set(b)


def get_node_name_set(nodes) -> Set[str]:
    return {node.metadata.name for node in nodes}


def get_pod_name_set(pods) -> Set[str]:
    return {pod.metadata.name for pod in pods}


def get_pod_node_name_set(pods) -> Set[str]:
    """Names of the nodes the given pods are scheduled on."""
    return {pod.spec.node_name for pod in pods if pod.spec and pod.spec.node_name}


# -----------------------------
# Generic filtering
# -----------------------------


def filter_with_fn(items: Iterable[T], fn: Callable[[T], bool]) -> List[T]:
    """Return the items matching ``fn`` in their original order."""
    return [item for item in items if fn(item)]


# -----------------------------
# Node helpers
# -----------------------------


def has_taint(node, taint_key: str, value: str, effect: str) -> bool:
    taints = (node.spec.taints if node.spec else None) or []
    for taint in taints:
        if taint.key == taint_key and taint.effect == effect:
            if (taint.value or "") == value:
                return True
    return False


def filter_nodes_with_taint(nodes, taint_key: str, value: str, effect: str) -> list:
    return filter_with_fn(nodes, lambda node: has_taint(node, taint_key, value, effect))


def is_node_cordoned(node) -> bool:
    return bool(node.spec and node.spec.unschedulable)


def is_node_excluded(node, taints: Iterable[Tuple[str, str, str]]) -> bool:
    """True if the node is cordoned or carries one of the (key, value, effect) taints."""
    if is_node_cordoned(node):
        return True
    return any(has_taint(node, key, value, effect) for key, value, effect in taints)


def parse_taint_list(raw: str) -> List[Tuple[str, str, str]]:
    """Parse ``key=value:Effect,key:Effect`` into (key, value, effect) triples."""
    result = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key_value, sep, effect = entry.rpartition(":")
        if not sep or not key_value or not effect:
            raise ValueError(f"invalid taint '{entry}', expected key[=value]:Effect")
        key, _, value = key_value.partition("=")
        result.append((key, value, effect))
    return result


# -----------------------------
# Pod helpers
# -----------------------------


def _pod_conditions(pod) -> list:
    if pod.status is None or not pod.status.conditions:
        return []
    return pod.status.conditions


def is_pod_unschedulable(pod) -> bool:
    for condition in _pod_conditions(pod):
        if (
            condition.reason == "Unschedulable"
            and condition.type == "PodScheduled"
            and condition.status == "False"
        ):
            return True
    return False


def is_pod_ready(pod) -> bool:
    for condition in _pod_conditions(pod):
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def filter_pods_with_node_in_name_set(pods, name_set: Set[str]) -> list:
    return filter_with_fn(pods, lambda pod: pod.spec.node_name in name_set)


def filter_pods_with_annotation_key(pods, key: str) -> list:
    return filter_with_fn(pods, lambda pod: key in (pod.metadata.annotations or {}))


def filter_pods_with_label(pods, label: str, value: str) -> list:
    def matches(pod) -> bool:
        labels = pod.metadata.labels
        if labels is None or label not in labels:
            return False
        return labels[label] == value

    return filter_with_fn(pods, matches)


# -----------------------------
# PVC helpers
# -----------------------------


def get_pvc_selected_node_name(pvc) -> str:
    annotations = pvc.metadata.annotations or {}
    return annotations.get(SELECTED_NODE_ANNOTATION, "")


# -----------------------------
# Deployment environment
# -----------------------------


def get_watch_namespace() -> str:
    """Return the namespace the operator should watch for changes.

    An empty value means all namespaces. Raises WatchNamespaceNotSetError
    if the variable is not present at all.
    """
    namespace: Optional[str] = os.environ.get(WATCH_NAMESPACE_ENV)
    if namespace is None:
        raise WatchNamespaceNotSetError()
    return namespace


def is_run_mode_local() -> bool:
    return os.environ.get(FORCE_RUN_MODE_ENV, "") == LOCAL_RUN_MODE


def get_operator_namespace(path: str = SERVICE_ACCOUNT_NAMESPACE_FILE) -> str:
    """Return the namespace the operator is running in.

    Raises RunLocalError when run mode is forced to local and
    NamespaceNotFoundError when the service account file does not exist.
    Any other read failure propagates unchanged.
    """
    if is_run_mode_local():
        raise RunLocalError()
    try:
        with open(path, "r") as f:
            namespace = f.read().strip()
    except FileNotFoundError:
        raise NamespaceNotFoundError()
    logger.debug(f"Found namespace: {namespace}")
    return namespace
