#!/usr/bin/env python3
# tests/test_node_inspector.py
"""
Test suite for KIND node container inspection.
"""

import os
import sys
import unittest
from unittest.mock import Mock

from docker.errors import APIError, NotFound

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from node_inspector import (
    DockerImageLookup,
    ImageLookup,
    NodeInspectionError,
    NodeInspector,
)


def make_container(role="control-plane", networks=None, image="kindest/node:v1.31.0"):
    if networks is None:
        networks = {"kind": {"IPAddress": "172.18.0.2", "GlobalIPv6Address": "fc00:f853::2"}}
    labels = {"io.x-k8s.kind.cluster": "dev"}
    if role:
        labels["io.x-k8s.kind.role"] = role
    container = Mock()
    container.attrs = {
        "Config": {"Image": image, "Labels": labels},
        "NetworkSettings": {"Networks": networks},
    }
    return container


class StaticImageLookup(ImageLookup):
    def __init__(self, image):
        self.image = image
        self.calls = []

    def lookup_image(self, node_name):
        self.calls.append(node_name)
        return self.image


class TestNodeInspector(unittest.TestCase):
    """Test role, address and image resolution."""

    def setUp(self):
        self.docker = Mock()
        self.inspector = NodeInspector(self.docker)

    def test_resolve_running_node(self):
        self.docker.containers.get.return_value = make_container()

        details = self.inspector.resolve("dev-control-plane")

        self.assertTrue(details.running)
        self.assertEqual(details.role, "control-plane")
        self.assertEqual(details.ipv4, "172.18.0.2")
        self.assertEqual(details.ipv6, "fc00:f853::2")
        self.assertEqual(details.image, "kindest/node:v1.31.0")
        self.docker.containers.get.assert_called_with("dev-control-plane")

    def test_missing_role_label(self):
        self.docker.containers.get.return_value = make_container(role=None)

        details = self.inspector.resolve("dev-worker")

        self.assertFalse(details.running)
        self.assertIsInstance(details.role_error, NodeInspectionError)
        self.assertIsNone(details.ip_error)
        self.assertEqual(details.ipv4, "172.18.0.2")

    def test_no_ip_assigned(self):
        """A stopped container keeps its network entry but has no address."""
        self.docker.containers.get.return_value = make_container(
            networks={"kind": {"IPAddress": "", "GlobalIPv6Address": ""}}
        )

        details = self.inspector.resolve("dev-worker")

        self.assertFalse(details.running)
        self.assertIsNone(details.role_error)
        self.assertIsInstance(details.ip_error, NodeInspectionError)

    def test_multiple_networks(self):
        self.docker.containers.get.return_value = make_container(
            networks={"kind": {"IPAddress": "172.18.0.2"}, "bridge": {"IPAddress": "172.17.0.3"}}
        )
        with self.assertRaises(NodeInspectionError):
            self.inspector.ip("dev-worker")

    def test_ipv6_only_node(self):
        self.docker.containers.get.return_value = make_container(
            networks={"kind": {"IPAddress": "", "GlobalIPv6Address": "fc00::3"}}
        )
        self.assertEqual(self.inspector.ip("dev-worker"), ("", "fc00::3"))

    def test_container_not_found(self):
        self.docker.containers.get.side_effect = NotFound("no such container")

        details = self.inspector.resolve("dev-worker2")

        self.assertFalse(details.running)
        self.assertIsNotNone(details.role_error)
        self.assertIsNotNone(details.ip_error)
        self.assertEqual(details.image, "")

    def test_image_failure_does_not_affect_status(self):
        """Image lookup degrades to an empty string and never marks the node Unknown."""
        container = make_container()
        self.docker.containers.get.side_effect = [container, container, APIError("daemon busy")]

        details = self.inspector.resolve("dev-control-plane")

        self.assertTrue(details.running)
        self.assertEqual(details.image, "")

    def test_custom_image_lookup(self):
        self.docker.containers.get.return_value = make_container()
        lookup = StaticImageLookup("registry.local/node:custom")
        inspector = NodeInspector(self.docker, image_lookup=lookup)

        details = inspector.resolve("dev-control-plane")

        self.assertEqual(details.image, "registry.local/node:custom")
        self.assertEqual(lookup.calls, ["dev-control-plane"])


class TestDockerImageLookup(unittest.TestCase):
    def test_lookup(self):
        docker_client = Mock()
        docker_client.containers.get.return_value = make_container(image="kindest/node:v1.29.2")
        self.assertEqual(DockerImageLookup(docker_client).lookup_image("n"), "kindest/node:v1.29.2")

    def test_unexpected_error_returns_empty(self):
        docker_client = Mock()
        docker_client.containers.get.side_effect = RuntimeError("boom")
        self.assertEqual(DockerImageLookup(docker_client).lookup_image("n"), "")


if __name__ == "__main__":
    unittest.main()
