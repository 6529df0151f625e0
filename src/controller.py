#!/usr/bin/env python3
# src/controller.py
"""
Event dispatch for CassandraDatacenter reconciliation.

This module provides:
- The Dispatcher interface used to request reconciles for a datacenter
- A Controller that drains a WorkQueue with worker threads and turns
  verdicts into requeue decisions
- Watch threads for CassandraDatacenters, StatefulSets and Pods
- A periodic resync of every known datacenter
"""

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from datacenter import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    DATACENTER_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
)
from reconciler import Verdict
from workqueue import WorkQueue, calculate_jittered_sleep

logger = logging.getLogger("cassandra-operator.controller")

REQUEUE_DELAY = float(os.environ.get("REQUEUE_DELAY", "2"))
RESYNC_INTERVAL = int(os.environ.get("RESYNC_INTERVAL", "300"))
WATCH_TIMEOUT = int(os.environ.get("WATCH_TIMEOUT", "300"))

Key = Tuple[str, str]


class Dispatcher(Protocol):
    def enqueue(self, key: Key, delay: float = 0.0) -> None:
        ...

    def reconcile_now(self, key: Key) -> Optional[Verdict]:
        ...


class Controller:
    """Serializes reconciles per datacenter and schedules retries from verdicts."""

    def __init__(
        self,
        reconcile_fn: Callable[[str, str], Verdict],
        queue: Optional[WorkQueue] = None,
        requeue_delay: float = REQUEUE_DELAY,
    ):
        self.reconcile_fn = reconcile_fn
        self.queue = queue or WorkQueue()
        self.requeue_delay = requeue_delay
        self._workers: List[threading.Thread] = []

    def enqueue(self, key: Key, delay: float = 0.0):
        self.queue.add_after(key, delay)

    def reconcile_now(self, key: Key) -> Optional[Verdict]:
        """Reconcile ``key`` on the calling thread.

        Returns None when a worker is already reconciling the key; the
        request is then folded into a follow-up run of that worker.
        """
        if not self.queue.try_claim(key):
            logger.debug(f"{key} is being reconciled by a worker, deferring")
            return None
        return self._run(key)

    def process_next_item(self, timeout: Optional[float] = None) -> bool:
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        self._run(key)
        return True

    def _run(self, key: Key) -> Verdict:
        namespace, name = key
        try:
            verdict = self.reconcile_fn(namespace, name)
        except Exception as e:
            logger.exception(f"Reconciler raised for {namespace}/{name}: {e}")
            verdict = Verdict.REQUEUE_ERROR
        try:
            self.handle_verdict(key, verdict)
        finally:
            self.queue.done(key)
        return verdict

    def handle_verdict(self, key: Key, verdict: Verdict):
        if verdict is Verdict.DONE:
            self.queue.forget(key)
        elif verdict is Verdict.REQUEUE:
            self.queue.forget(key)
            self.queue.add_after(key, self.requeue_delay)
        else:
            delay = self.queue.add_rate_limited(key)
            logger.info(f"Reconcile of {key[0]}/{key[1]} failed, retrying in {delay:.1f}s")

    def _worker_loop(self):
        while not self.queue.shutting_down:
            try:
                self.process_next_item(timeout=1.0)
            except Exception as e:
                logger.error(f"Worker loop error: {e}")
                time.sleep(1)

    def start_workers(self, count: int):
        for i in range(count):
            worker = threading.Thread(
                target=self._worker_loop, name=f"reconcile-worker-{i}", daemon=True
            )
            worker.start()
            self._workers.append(worker)
        logger.info(f"Started {count} reconcile worker(s)")

    def stop(self, timeout: float = 5):
        self.queue.shut_down()
        for worker in self._workers:
            if worker.is_alive():
                worker.join(timeout=timeout)


# -----------------------------
# Event mapping
# -----------------------------


def _metadata(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, dict):
        return obj.get("metadata", {}) or {}
    meta = obj.metadata
    return {"name": meta.name, "namespace": meta.namespace, "labels": meta.labels or {}}


def key_for_datacenter(obj: Any) -> Optional[Key]:
    meta = _metadata(obj)
    if not meta.get("name"):
        return None
    return meta.get("namespace", ""), meta["name"]


def key_for_child(obj: Any) -> Optional[Key]:
    """Map a StatefulSet or Pod to the datacenter that owns it via its labels."""
    meta = _metadata(obj)
    dc_name = (meta.get("labels") or {}).get(DATACENTER_LABEL)
    if not dc_name:
        return None
    return meta.get("namespace", ""), dc_name


class ResourceWatcher:
    """Streams watch events for one resource kind and enqueues datacenter keys."""

    def __init__(
        self,
        name: str,
        list_fn: Callable,
        key_fn: Callable[[Any], Optional[Key]],
        dispatcher: Dispatcher,
        shutdown_event: threading.Event,
        **list_kwargs,
    ):
        self.name = name
        self.list_fn = list_fn
        self.key_fn = key_fn
        self.dispatcher = dispatcher
        self.list_kwargs = list_kwargs
        self._shutdown_event = shutdown_event
        self._thread: Optional[threading.Thread] = None

    def handle_event(self, event: Dict[str, Any]):
        key = self.key_fn(event["object"])
        if key is None:
            return
        logger.debug(f"{self.name} event {event['type']} -> {key[0]}/{key[1]}")
        self.dispatcher.enqueue(key)

    def run(self):
        logger.info(f"Starting {self.name} watch")
        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                for event in w.stream(
                    self.list_fn, timeout_seconds=WATCH_TIMEOUT, **self.list_kwargs
                ):
                    if self._shutdown_event.is_set():
                        break
                    self.handle_event(event)
                w.stop()

            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{self.name} watch resource version expired, restarting")
                    continue
                logger.error(f"{self.name} watch error: {e}")
                self._shutdown_event.wait(5)

            except Exception as e:
                logger.error(f"Unexpected {self.name} watch error: {e}")
                self._shutdown_event.wait(5)

        logger.info(f"{self.name} watch stopped")

    def start(self):
        self._thread = threading.Thread(target=self.run, name=f"watch-{self.name}", daemon=True)
        self._thread.start()


def build_watchers(
    namespace: str,
    core_api: client.CoreV1Api,
    apps_api: client.AppsV1Api,
    custom_objects_api: client.CustomObjectsApi,
    dispatcher: Dispatcher,
    shutdown_event: threading.Event,
) -> List[ResourceWatcher]:
    """Watchers for datacenters and their children; empty namespace watches all."""
    managed = f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
    crd_kwargs = {"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL}

    if namespace:
        crd_list = custom_objects_api.list_namespaced_custom_object
        crd_kwargs["namespace"] = namespace
        sts_list = apps_api.list_namespaced_stateful_set
        pod_list = core_api.list_namespaced_pod
        child_kwargs = {"namespace": namespace, "label_selector": managed}
    else:
        crd_list = custom_objects_api.list_cluster_custom_object
        sts_list = apps_api.list_stateful_set_for_all_namespaces
        pod_list = core_api.list_pod_for_all_namespaces
        child_kwargs = {"label_selector": managed}

    return [
        ResourceWatcher(
            "CassandraDatacenter", crd_list, key_for_datacenter, dispatcher,
            shutdown_event, **crd_kwargs
        ),
        ResourceWatcher(
            "StatefulSet", sts_list, key_for_child, dispatcher, shutdown_event, **child_kwargs
        ),
        ResourceWatcher(
            "Pod", pod_list, key_for_child, dispatcher, shutdown_event, **child_kwargs
        ),
    ]


def list_datacenter_keys(
    namespace: str, custom_objects_api: client.CustomObjectsApi
) -> List[Key]:
    if namespace:
        result = custom_objects_api.list_namespaced_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, namespace=namespace, plural=CRD_PLURAL
        )
    else:
        result = custom_objects_api.list_cluster_custom_object(
            group=CRD_GROUP, version=CRD_VERSION, plural=CRD_PLURAL
        )
    keys = []
    for item in result.get("items", []):
        key = key_for_datacenter(item)
        if key is not None:
            keys.append(key)
    return keys


def resync_loop(
    namespace: str,
    custom_objects_api: client.CustomObjectsApi,
    dispatcher: Dispatcher,
    shutdown_event: threading.Event,
    interval: int = RESYNC_INTERVAL,
):
    """Periodically enqueue every datacenter so drift is caught without events."""
    while not shutdown_event.is_set():
        try:
            keys = list_datacenter_keys(namespace, custom_objects_api)
            for key in keys:
                dispatcher.enqueue(key)
            logger.debug(f"Resync enqueued {len(keys)} datacenter(s)")
        except ApiException as e:
            logger.warning(f"Resync list failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected resync error: {e}")

        if shutdown_event.wait(calculate_jittered_sleep(interval)):
            break
