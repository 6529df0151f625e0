#!/usr/bin/env python3
# tests/test_controller.py
"""
Tests for verdict handling, event-to-key mapping, watchers and resync.
"""

import os
import sys
import threading
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(__file__))

from k8s_fixtures import make_dc, make_pod, make_sts
from kubernetes.client.rest import ApiException

import controller
from controller import Controller, ResourceWatcher, key_for_child, key_for_datacenter
from reconciler import Verdict
from workqueue import WorkQueue

KEY = ("default", "dc1")


class RecordingDispatcher:
    """In-memory dispatcher that records what was requested."""

    def __init__(self):
        self.enqueued = []

    def enqueue(self, key, delay=0.0):
        self.enqueued.append((key, delay))

    def reconcile_now(self, key):
        return None


class TestController(unittest.TestCase):
    def setUp(self):
        self.queue = Mock(spec=WorkQueue)
        self.queue.add_rate_limited.return_value = 1.5
        self.reconcile_fn = Mock(return_value=Verdict.DONE)
        self.controller = Controller(self.reconcile_fn, queue=self.queue, requeue_delay=2.0)

    def test_done_forgets_failures(self):
        self.controller.handle_verdict(KEY, Verdict.DONE)
        self.queue.forget.assert_called_once_with(KEY)
        self.queue.add_after.assert_not_called()

    def test_requeue_uses_fixed_delay(self):
        self.controller.handle_verdict(KEY, Verdict.REQUEUE)
        self.queue.forget.assert_called_once_with(KEY)
        self.queue.add_after.assert_called_once_with(KEY, 2.0)

    def test_requeue_error_backs_off(self):
        self.controller.handle_verdict(KEY, Verdict.REQUEUE_ERROR)
        self.queue.add_rate_limited.assert_called_once_with(KEY)
        self.queue.forget.assert_not_called()

    def test_process_next_item(self):
        self.queue.get.return_value = KEY

        self.assertTrue(self.controller.process_next_item(timeout=0))
        self.reconcile_fn.assert_called_once_with("default", "dc1")
        self.queue.done.assert_called_once_with(KEY)

    def test_process_next_item_empty(self):
        self.queue.get.return_value = None
        self.assertFalse(self.controller.process_next_item(timeout=0))
        self.reconcile_fn.assert_not_called()

    def test_reconcile_exception_becomes_requeue_error(self):
        self.queue.get.return_value = KEY
        self.reconcile_fn.side_effect = RuntimeError("boom")

        self.controller.process_next_item(timeout=0)

        self.queue.add_rate_limited.assert_called_once_with(KEY)
        self.queue.done.assert_called_once_with(KEY)

    def test_reconcile_now_runs_inline(self):
        self.queue.try_claim.return_value = True
        self.reconcile_fn.return_value = Verdict.REQUEUE

        self.assertIs(self.controller.reconcile_now(KEY), Verdict.REQUEUE)
        self.queue.done.assert_called_once_with(KEY)

    def test_reconcile_now_defers_when_worker_holds_key(self):
        self.queue.try_claim.return_value = False

        self.assertIsNone(self.controller.reconcile_now(KEY))
        self.reconcile_fn.assert_not_called()

    def test_enqueue(self):
        self.controller.enqueue(KEY, 3.0)
        self.queue.add_after.assert_called_once_with(KEY, 3.0)


class TestControllerWithQueue(unittest.TestCase):
    def test_event_during_reconcile_runs_again(self):
        queue = WorkQueue()
        calls = []

        def reconcile(namespace, name):
            calls.append(name)
            if len(calls) == 1:
                ctrl.enqueue((namespace, name))
            return Verdict.DONE

        ctrl = Controller(reconcile, queue=queue)
        queue.add(KEY)

        self.assertTrue(ctrl.process_next_item(timeout=0))
        self.assertTrue(ctrl.process_next_item(timeout=0))
        self.assertFalse(ctrl.process_next_item(timeout=0))
        self.assertEqual(calls, ["dc1", "dc1"])

    def test_workers_stop(self):
        ctrl = Controller(Mock(return_value=Verdict.DONE))
        ctrl.start_workers(2)
        ctrl.stop(timeout=5)
        self.assertTrue(all(not w.is_alive() for w in ctrl._workers))


class TestKeyMapping(unittest.TestCase):
    def test_datacenter_dict(self):
        obj = {"metadata": {"name": "dc1", "namespace": "default"}}
        self.assertEqual(key_for_datacenter(obj), KEY)

    def test_datacenter_without_name(self):
        self.assertIsNone(key_for_datacenter({"metadata": {}}))

    def test_pod_maps_to_owning_datacenter(self):
        self.assertEqual(key_for_child(make_pod("cluster1-dc1-r1-sts-0")), KEY)

    def test_statefulset_maps_to_owning_datacenter(self):
        self.assertEqual(key_for_child(make_sts(make_dc(), "r1", 3)), KEY)

    def test_unlabelled_child_is_ignored(self):
        pod = make_pod("stray")
        pod.metadata.labels = {}
        self.assertIsNone(key_for_child(pod))


class TestResourceWatcher(unittest.TestCase):
    def setUp(self):
        self.dispatcher = RecordingDispatcher()
        self.shutdown = threading.Event()

    def test_handle_event_enqueues(self):
        watcher = ResourceWatcher("Pod", Mock(), key_for_child, self.dispatcher, self.shutdown)
        watcher.handle_event({"type": "MODIFIED", "object": make_pod("cluster1-dc1-r1-sts-0")})
        self.assertEqual(self.dispatcher.enqueued, [(KEY, 0.0)])

    def test_handle_event_ignores_unmapped(self):
        watcher = ResourceWatcher("Pod", Mock(), key_for_child, self.dispatcher, self.shutdown)
        pod = make_pod("stray")
        pod.metadata.labels = None
        watcher.handle_event({"type": "ADDED", "object": pod})
        self.assertEqual(self.dispatcher.enqueued, [])

    @patch("controller.watch.Watch")
    def test_run_streams_until_shutdown(self, mock_watch_cls):
        events = [
            {"type": "ADDED", "object": {"metadata": {"name": "dc1", "namespace": "default"}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "dc2", "namespace": "default"}}},
        ]

        def stream(*args, **kwargs):
            yield from events
            self.shutdown.set()

        mock_watch_cls.return_value.stream.side_effect = stream
        list_fn = Mock()
        watcher = ResourceWatcher(
            "CassandraDatacenter", list_fn, key_for_datacenter, self.dispatcher,
            self.shutdown, namespace="default",
        )

        watcher.run()

        self.assertEqual(
            [key for key, _ in self.dispatcher.enqueued], [KEY, ("default", "dc2")]
        )
        args, kwargs = mock_watch_cls.return_value.stream.call_args
        self.assertIs(args[0], list_fn)
        self.assertEqual(kwargs["namespace"], "default")

    @patch("controller.watch.Watch")
    def test_run_restarts_on_expired_resource_version(self, mock_watch_cls):
        calls = []

        def stream(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ApiException(status=410)
            self.shutdown.set()
            return iter([])

        mock_watch_cls.return_value.stream.side_effect = stream
        watcher = ResourceWatcher("Pod", Mock(), key_for_child, self.dispatcher, self.shutdown)

        watcher.run()

        self.assertEqual(len(calls), 2)


class TestWatchersAndResync(unittest.TestCase):
    def test_build_watchers_namespaced(self):
        core, apps, custom = Mock(), Mock(), Mock()
        watchers = controller.build_watchers(
            "cassandra", core, apps, custom, RecordingDispatcher(), threading.Event()
        )
        self.assertEqual([w.name for w in watchers], ["CassandraDatacenter", "StatefulSet", "Pod"])
        self.assertIs(watchers[0].list_fn, custom.list_namespaced_custom_object)
        self.assertIs(watchers[2].list_fn, core.list_namespaced_pod)
        self.assertEqual(watchers[1].list_kwargs["namespace"], "cassandra")

    def test_build_watchers_all_namespaces(self):
        core, apps, custom = Mock(), Mock(), Mock()
        watchers = controller.build_watchers(
            "", core, apps, custom, RecordingDispatcher(), threading.Event()
        )
        self.assertIs(watchers[0].list_fn, custom.list_cluster_custom_object)
        self.assertIs(watchers[1].list_fn, apps.list_stateful_set_for_all_namespaces)
        self.assertNotIn("namespace", watchers[2].list_kwargs)

    def test_list_datacenter_keys(self):
        custom = Mock()
        custom.list_namespaced_custom_object.return_value = {
            "items": [
                {"metadata": {"name": "dc1", "namespace": "default"}},
                {"metadata": {"name": "dc2", "namespace": "default"}},
            ]
        }
        self.assertEqual(
            controller.list_datacenter_keys("default", custom), [KEY, ("default", "dc2")]
        )

    def test_resync_enqueues_every_datacenter(self):
        custom = Mock()
        custom.list_cluster_custom_object.return_value = {
            "items": [{"metadata": {"name": "dc1", "namespace": "default"}}]
        }
        shutdown = Mock()
        shutdown.is_set.return_value = False
        shutdown.wait.return_value = True
        dispatcher = RecordingDispatcher()

        controller.resync_loop("", custom, dispatcher, shutdown, interval=10)

        self.assertEqual(dispatcher.enqueued, [(KEY, 0.0)])

    def test_resync_survives_list_failure(self):
        custom = Mock()
        custom.list_namespaced_custom_object.side_effect = ApiException(status=500)
        shutdown = Mock()
        shutdown.is_set.return_value = False
        shutdown.wait.return_value = True

        controller.resync_loop("default", custom, RecordingDispatcher(), shutdown, interval=10)

        shutdown.wait.assert_called_once()


if __name__ == "__main__":
    unittest.main()
