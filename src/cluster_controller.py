#!/usr/bin/env python3
# src/cluster_controller.py
"""
External client for KIND Cluster managed resources.

This module provides:
- The connector that tracks ProviderConfig usage and builds a client per reconcile
- Observe/Create/Update/Delete of a KIND cluster for one managed resource
"""

import logging
import os
import threading
from typing import Callable, Optional

import docker
import yaml
from docker.errors import DockerException

import kind_config
from kind_backend import BackendError, KindProvider
from managed import (
    KUBECONFIG_KEY,
    NODE_RUNNING,
    NODE_UNKNOWN,
    BackendListError,
    BackendMutationError,
    BackendReadError,
    ClusterError,
    ExternalCreation,
    ExternalDelete,
    ExternalObservation,
    ExternalUpdate,
    KindCluster,
    NodeObservation,
    ObservedClusterState,
    PreconditionError,
    TypeMismatchError,
    available,
    creating,
    deleting,
    unavailable,
)
from node_inspector import NodeInspector
from usage_tracker import ProviderConfigUsageTracker

logger = logging.getLogger("provider-kind.cluster")

ERR_NOT_CLUSTER = "managed resource is not a Cluster custom resource"
ERR_LIST_CLUSTERS = "cannot list KIND clusters"
ERR_CREATE_CLUSTER = "cannot create KIND cluster"
ERR_DELETE_CLUSTER = "cannot delete KIND cluster"
ERR_GET_KUBECONFIG = "cannot get kubeconfig for KIND cluster"
ERR_GET_NODES = "cannot list KIND cluster nodes"
ERR_PARSE_WAIT = "cannot parse waitForReady duration"
ERR_PARSE_SPEC = "cannot parse Cluster spec"
ERR_CONNECT_DOCKER = "cannot connect to the Docker daemon"


def as_cluster(mg) -> KindCluster:
    """Entry check shared by every exported operation."""
    if not isinstance(mg, KindCluster):
        raise TypeMismatchError(ERR_NOT_CLUSTER)
    return mg


def api_server_endpoint(kubeconfig: str) -> Optional[str]:
    """Return the server of the first cluster entry in a kubeconfig, if any."""
    try:
        doc = yaml.safe_load(kubeconfig) or {}
    except yaml.YAMLError as e:
        logger.debug(f"Cannot parse kubeconfig: {e}")
        return None
    if not isinstance(doc, dict):
        return None
    for entry in doc.get("clusters") or []:
        server = (entry.get("cluster") or {}).get("server")
        if server:
            return server
    return None


class Connector:
    """Produces an ExternalClient for each reconcile of a Cluster."""

    def __init__(
        self,
        usage_tracker: ProviderConfigUsageTracker,
        provider_factory: Callable[[], KindProvider] = KindProvider,
        docker_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ):
        self.usage = usage_tracker
        self.provider_factory = provider_factory
        self.docker_factory = docker_factory

    def connect(self, mg, cancel: Optional[threading.Event] = None) -> "ExternalClient":
        cr = as_cluster(mg)

        # Fails with UsageTrackingError; no client is produced in that case.
        self.usage.track(cr)

        # The local Docker daemon needs no credentials.
        try:
            docker_client = self.docker_factory()
        except DockerException as e:
            raise ClusterError(f"{ERR_CONNECT_DOCKER}: {e}") from e
        return ExternalClient(
            provider=self.provider_factory(),
            inspector=NodeInspector(docker_client),
            docker_client=docker_client,
            cancel=cancel,
        )


class ExternalClient:
    """Drives one KIND cluster towards the desired state of a Cluster resource.

    The client keeps no state between calls apart from its backend handles.
    """

    def __init__(
        self,
        provider: KindProvider,
        inspector: NodeInspector,
        docker_client=None,
        cancel: Optional[threading.Event] = None,
    ):
        self.provider = provider
        self.inspector = inspector
        self.docker = docker_client
        self.cancel = cancel

    def observe(self, mg) -> ExternalObservation:
        cr = as_cluster(mg)
        cluster_name = cr.cluster_name()

        try:
            clusters = self.provider.list(cancel=self.cancel)
        except BackendError as e:
            raise BackendListError(f"{ERR_LIST_CLUSTERS}: {e}") from e

        if cluster_name not in clusters:
            logger.debug(f"KIND cluster {cluster_name} does not exist")
            cr.set_observation(ObservedClusterState())
            return ExternalObservation(resource_exists=False)

        try:
            kubeconfig = self.provider.kubeconfig(cluster_name, cancel=self.cancel)
        except BackendError as e:
            raise BackendReadError(f"{ERR_GET_KUBECONFIG}: {e}") from e

        try:
            node_names = self.provider.list_nodes(cluster_name, cancel=self.cancel)
        except BackendError as e:
            raise BackendReadError(f"{ERR_GET_NODES}: {e}") from e

        observed = ObservedClusterState(api_server_endpoint=api_server_endpoint(kubeconfig))
        for node_name in sorted(node_names):
            details = self.inspector.resolve(node_name)
            observed.nodes.append(
                NodeObservation(
                    name=node_name,
                    role=details.role,
                    status=NODE_RUNNING if details.running else NODE_UNKNOWN,
                    image=details.image,
                    ip_address=details.ipv4,
                    ipv6_address=details.ipv6,
                )
            )
        observed.ready = bool(observed.nodes) and all(
            n.status == NODE_RUNNING for n in observed.nodes
        )

        cr.set_observation(observed)
        cr.set_conditions(available() if observed.ready else unavailable())

        logger.debug(
            f"Observed KIND cluster {cluster_name}: ready={observed.ready}, nodes={len(observed.nodes)}"
        )

        return ExternalObservation(
            resource_exists=True,
            resource_up_to_date=True,
            connection_details={KUBECONFIG_KEY: kubeconfig.encode()},
        )

    def create(self, mg) -> ExternalCreation:
        cr = as_cluster(mg)
        cr.set_conditions(creating())

        if not cr.get_external_name():
            cr.set_external_name(cr.name)
        cluster_name = cr.cluster_name()

        try:
            spec = kind_config.DesiredClusterSpec.from_dict(cr.for_provider)
        except (kind_config.SpecError, TypeError, ValueError) as e:
            raise PreconditionError(f"{ERR_PARSE_SPEC}: {e}") from e

        config = kind_config.render(kind_config.project(spec))

        wait = None
        if spec.wait_for_ready is not None:
            try:
                wait = kind_config.format_duration(
                    kind_config.parse_duration(spec.wait_for_ready)
                )
            except ValueError as e:
                raise PreconditionError(f"{ERR_PARSE_WAIT}: {e}") from e

        logger.info(f"Creating KIND cluster {cluster_name} for {cr!r}")
        try:
            # /dev/null keeps the host's default kubeconfig untouched.
            self.provider.create(
                cluster_name,
                config,
                wait=wait,
                kubeconfig_path=os.devnull,
                cancel=self.cancel,
            )
        except BackendError as e:
            raise BackendMutationError(f"{ERR_CREATE_CLUSTER}: {e}") from e

        try:
            kubeconfig = self.provider.kubeconfig(cluster_name, cancel=self.cancel)
        except BackendError as e:
            raise BackendReadError(f"{ERR_GET_KUBECONFIG}: {e}") from e

        logger.info(f"Created KIND cluster {cluster_name}")
        return ExternalCreation(connection_details={KUBECONFIG_KEY: kubeconfig.encode()})

    def update(self, mg) -> ExternalUpdate:
        as_cluster(mg)
        # KIND clusters are immutable after creation; topology or networking
        # changes need a delete and recreate, which is never done implicitly.
        return ExternalUpdate()

    def delete(self, mg) -> ExternalDelete:
        cr = as_cluster(mg)
        cr.set_conditions(deleting())
        cluster_name = cr.cluster_name()

        logger.info(f"Deleting KIND cluster {cluster_name} for {cr!r}")
        try:
            self.provider.delete(cluster_name, kubeconfig_path=os.devnull, cancel=self.cancel)
        except BackendError as e:
            raise BackendMutationError(f"{ERR_DELETE_CLUSTER}: {e}") from e

        return ExternalDelete()

    def disconnect(self):
        if self.docker is not None:
            try:
                self.docker.close()
            except Exception as e:
                logger.debug(f"Error closing Docker client: {e}")
