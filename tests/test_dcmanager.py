#!/usr/bin/env python3
# tests/test_dcmanager.py
"""
Tests for the operator process: configuration loading, namespace resolution
and the metrics/health HTTP endpoint.
"""

import os
import sys
import unittest
import urllib.error
import urllib.request
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kubernetes import config

import dcmanager
from k8s_utils import NamespaceNotFoundError, RunLocalError


class TestStartup(unittest.TestCase):
    @patch("dcmanager.config.load_kube_config")
    @patch("dcmanager.config.load_incluster_config")
    def test_in_cluster_config_preferred(self, mock_incluster, mock_kubeconfig):
        dcmanager.load_kube_config()
        mock_incluster.assert_called_once()
        mock_kubeconfig.assert_not_called()

    @patch("dcmanager.config.load_kube_config")
    @patch("dcmanager.config.load_incluster_config")
    def test_falls_back_to_kubeconfig(self, mock_incluster, mock_kubeconfig):
        mock_incluster.side_effect = config.ConfigException("not in cluster")
        dcmanager.load_kube_config()
        mock_kubeconfig.assert_called_once()

    @patch("dcmanager.get_operator_namespace", return_value="cass-operator")
    def test_resolve_operator_namespace(self, _):
        self.assertEqual(dcmanager.resolve_operator_namespace(), "cass-operator")

    @patch("dcmanager.get_operator_namespace", side_effect=RunLocalError("local"))
    def test_resolve_operator_namespace_local(self, _):
        self.assertEqual(dcmanager.resolve_operator_namespace(), "")

    @patch("dcmanager.get_operator_namespace", side_effect=NamespaceNotFoundError("missing"))
    def test_resolve_operator_namespace_missing(self, _):
        self.assertEqual(dcmanager.resolve_operator_namespace(), "")

    @patch("dcmanager.load_kube_config")
    @patch("dcmanager.setup_logging")
    def test_main_requires_watch_namespace(self, _, mock_load):
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(dcmanager.main(), 1)
        mock_load.assert_not_called()

    def test_signal_handler_sets_shutdown(self):
        dcmanager.shutdown_event.clear()
        try:
            dcmanager.signal_handler(15, None)
            self.assertTrue(dcmanager.shutdown_event.is_set())
        finally:
            dcmanager.shutdown_event.clear()


class TestHTTPEndpoints(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.server = dcmanager.start_metrics_server(port=0)
        cls.base = f"http://127.0.0.1:{cls.server.server_address[1]}"

    @classmethod
    def tearDownClass(cls):
        cls.server.shutdown()
        cls.server.server_close()

    def fetch(self, path):
        try:
            with urllib.request.urlopen(self.base + path, timeout=5) as response:
                return response.getcode(), response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            return e.code, e.read().decode("utf-8")

    def test_healthz(self):
        self.assertEqual(self.fetch("/healthz"), (200, "OK"))

    def test_readyz_follows_operator_state(self):
        with patch.object(dcmanager, "operator_ready", False):
            self.assertEqual(self.fetch("/readyz")[0], 503)
        with patch.object(dcmanager, "operator_ready", True):
            self.assertEqual(self.fetch("/readyz"), (200, "OK"))

    def test_metrics(self):
        code, body = self.fetch("/metrics")
        self.assertEqual(code, 200)
        self.assertIn("cassandra_operator_workqueue_depth", body)

    def test_unknown_path(self):
        self.assertEqual(self.fetch("/startup-status")[0], 404)


if __name__ == "__main__":
    unittest.main()
