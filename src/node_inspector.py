#!/usr/bin/env python3
# src/node_inspector.py
"""
Inspection of KIND node containers through the local Docker daemon.

Role and address lookups mirror what KIND itself reads from a node container:
the io.x-k8s.kind.role label and the addresses of the single network the node
is attached to. Image lookup is best-effort and never fails.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import docker
from docker.errors import DockerException

logger = logging.getLogger("provider-kind.inspector")

ROLE_LABEL = "io.x-k8s.kind.role"


class NodeInspectionError(Exception):
    """A node attribute could not be resolved."""


@dataclass
class NodeDetails:
    role: str = ""
    ipv4: str = ""
    ipv6: str = ""
    image: str = ""
    role_error: Optional[Exception] = None
    ip_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self.role_error is None and self.ip_error is None


class ImageLookup:
    """Capability returning the image a node container runs."""

    def lookup_image(self, node_name: str) -> str:
        raise NotImplementedError


class DockerImageLookup(ImageLookup):
    def __init__(self, docker_client: docker.DockerClient):
        self.docker = docker_client

    def lookup_image(self, node_name: str) -> str:
        try:
            container = self.docker.containers.get(node_name)
            return (container.attrs.get("Config") or {}).get("Image", "") or ""
        except DockerException as e:
            logger.debug(f"Cannot determine image of node {node_name}: {e}")
            return ""
        except Exception as e:
            logger.warning(f"Unexpected error looking up image of node {node_name}: {e}")
            return ""


class NodeInspector:
    """Resolves the identity attributes of KIND node containers."""

    def __init__(
        self,
        docker_client: docker.DockerClient,
        image_lookup: Optional[ImageLookup] = None,
    ):
        self.docker = docker_client
        self.image_lookup = image_lookup or DockerImageLookup(docker_client)

    def role(self, node_name: str) -> str:
        try:
            container = self.docker.containers.get(node_name)
        except DockerException as e:
            raise NodeInspectionError(f"failed to get role for node {node_name}: {e}") from e
        labels = (container.attrs.get("Config") or {}).get("Labels") or {}
        role = labels.get(ROLE_LABEL)
        if not role:
            raise NodeInspectionError(f"node {node_name} has no {ROLE_LABEL} label")
        return role

    def ip(self, node_name: str) -> Tuple[str, str]:
        """Return the (ipv4, ipv6) addresses of a node container."""
        try:
            container = self.docker.containers.get(node_name)
        except DockerException as e:
            raise NodeInspectionError(
                f"failed to get container details for node {node_name}: {e}"
            ) from e

        networks = (container.attrs.get("NetworkSettings") or {}).get("Networks") or {}
        if len(networks) != 1:
            raise NodeInspectionError(
                f"node {node_name} should be attached to exactly one network, found {len(networks)}"
            )
        settings = next(iter(networks.values())) or {}
        ipv4 = settings.get("IPAddress", "") or ""
        ipv6 = settings.get("GlobalIPv6Address", "") or ""
        if not ipv4 and not ipv6:
            raise NodeInspectionError(f"node {node_name} has no IP address assigned")
        return ipv4, ipv6

    def resolve(self, node_name: str) -> NodeDetails:
        """Resolve role, addresses and image of a node.

        Role and IP failures are recorded on the result rather than raised so
        that the caller can classify the node.
        """
        details = NodeDetails()

        try:
            details.role = self.role(node_name)
        except NodeInspectionError as e:
            details.role_error = e
            logger.debug(str(e))

        try:
            details.ipv4, details.ipv6 = self.ip(node_name)
        except NodeInspectionError as e:
            details.ip_error = e
            logger.debug(str(e))

        details.image = self.image_lookup.lookup_image(node_name)
        return details
