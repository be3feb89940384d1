#!/usr/bin/env python3
# src/reconciler.py
"""
Reconcile driver for KIND Cluster managed resources.

One call to Reconciler.reconcile() performs a single pass for one resource:
connect, observe, then create or delete as needed, publish the kubeconfig
connection secret and persist status, finalizer and external name through the
Kubernetes API.
"""

import base64
import logging
import threading
from typing import Any, Dict, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from prometheus_client import Counter, Gauge

from cluster_controller import Connector
from managed import (
    CLUSTER,
    CONNECTION_SECRET_TYPE,
    FINALIZER,
    ClusterError,
    KindCluster,
    ResourceKind,
    reconcile_error,
    reconcile_success,
)

logger = logging.getLogger("provider-kind.reconciler")

DEFAULT_SECRET_NAMESPACE = "crossplane-system"

# -----------------------------
# Prometheus Metrics
# -----------------------------
reconcile_total = Counter(
    "kind_provider_reconcile_total",
    "Total number of external client operations",
    ["kind", "operation", "result"],
)
cluster_ready = Gauge(
    "kind_provider_cluster_ready",
    "Whether the KIND cluster backing a resource is ready",
    ["kind", "cluster"],
)
cluster_nodes = Gauge(
    "kind_provider_cluster_nodes",
    "Number of observed nodes of the KIND cluster backing a resource",
    ["kind", "cluster"],
)


class Reconciler:
    """Reconciles Cluster custom objects of a single resource kind."""

    def __init__(
        self,
        custom_objects_api: client.CustomObjectsApi,
        core_api: Optional[client.CoreV1Api],
        connector: Connector,
        resource_kind: ResourceKind = CLUSTER,
        cancel: Optional[threading.Event] = None,
    ):
        self.api = custom_objects_api
        self.core_api = core_api
        self.connector = connector
        self.resource_kind = resource_kind
        self.cancel = cancel

    def list_resources(self):
        """List objects of this kind across all namespaces."""
        rk = self.resource_kind
        result = self.api.list_cluster_custom_object(
            group=rk.group, version=rk.version, plural=rk.plural
        )
        return result.get("items", [])

    def reconcile(self, obj: Dict[str, Any]) -> str:
        """Run one reconcile pass and return a short outcome label."""
        cr = KindCluster(obj, self.resource_kind)
        external_name = cr.get_external_name()

        try:
            external = self.connector.connect(cr, cancel=self.cancel)
        except ClusterError as e:
            logger.error(f"Cannot connect to KIND backend for {cr!r}: {e}")
            self._record("connect", False)
            cr.set_conditions(reconcile_error(e))
            self._patch_status(cr)
            return "error"

        try:
            return self._reconcile(cr, external, external_name)
        except ClusterError as e:
            logger.error(f"Reconcile of {cr!r} failed: {e}")
            cr.set_conditions(reconcile_error(e))
            self._patch_status(cr)
            return "error"
        finally:
            external.disconnect()

    def _reconcile(self, cr: KindCluster, external, external_name: str) -> str:
        observation = self._run("observe", external.observe, cr)

        if cr.being_deleted:
            if observation.resource_exists and cr.deletion_policy != "Orphan":
                self._run("delete", external.delete, cr)
                cr.set_conditions(reconcile_success())
                self._patch_status(cr)
                return "deleting"

            self._unpublish_connection_details(cr)
            self.connector.usage.release(cr)
            self._remove_finalizer(cr)
            self._clear_metrics(cr)
            logger.info(f"Finalized {cr!r}")
            return "finalized"

        self._add_finalizer(cr)

        if not observation.resource_exists:
            try:
                creation = self._run("create", external.create, cr)
            finally:
                if cr.get_external_name() != external_name:
                    self._patch_metadata(
                        cr, {"metadata": {"annotations": cr.annotations}}
                    )
            self._publish_connection_details(cr, creation.connection_details)
            cr.set_conditions(reconcile_success())
            self._patch_status(cr)
            return "created"

        details = dict(observation.connection_details)
        if not observation.resource_up_to_date:
            update = self._run("update", external.update, cr)
            details.update(update.connection_details)

        self._publish_connection_details(cr, details)
        self._update_metrics(cr)
        cr.set_conditions(reconcile_success())
        self._patch_status(cr)
        return "observed"

    def _run(self, operation: str, fn, cr: KindCluster):
        try:
            result = fn(cr)
        except ClusterError:
            self._record(operation, False)
            raise
        self._record(operation, True)
        return result

    def _record(self, operation: str, ok: bool):
        reconcile_total.labels(
            kind=self.resource_kind.label,
            operation=operation,
            result="success" if ok else "error",
        ).inc()

    def _update_metrics(self, cr: KindCluster):
        labels = {"kind": self.resource_kind.label, "cluster": cr.cluster_name()}
        at_provider = cr.at_provider
        cluster_ready.labels(**labels).set(1 if at_provider.get("ready") else 0)
        cluster_nodes.labels(**labels).set(len(at_provider.get("nodes") or []))

    def _clear_metrics(self, cr: KindCluster):
        for gauge in (cluster_ready, cluster_nodes):
            try:
                gauge.remove(self.resource_kind.label, cr.cluster_name())
            except KeyError:
                pass

    # -----------------------------
    # Kubernetes API writes
    # -----------------------------

    def _patch_status(self, cr: KindCluster):
        rk = self.resource_kind
        try:
            if rk.namespaced:
                self.api.patch_namespaced_custom_object_status(
                    group=rk.group,
                    version=rk.version,
                    namespace=cr.namespace,
                    plural=rk.plural,
                    name=cr.name,
                    body=cr.status_patch(),
                )
            else:
                self.api.patch_cluster_custom_object_status(
                    group=rk.group,
                    version=rk.version,
                    plural=rk.plural,
                    name=cr.name,
                    body=cr.status_patch(),
                )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{cr!r} is gone, skipping status update")
                return
            logger.warning(f"Failed to update status of {cr!r}: {e}")

    def _patch_metadata(self, cr: KindCluster, body: Dict[str, Any]):
        rk = self.resource_kind
        try:
            if rk.namespaced:
                self.api.patch_namespaced_custom_object(
                    group=rk.group,
                    version=rk.version,
                    namespace=cr.namespace,
                    plural=rk.plural,
                    name=cr.name,
                    body=body,
                )
            else:
                self.api.patch_cluster_custom_object(
                    group=rk.group,
                    version=rk.version,
                    plural=rk.plural,
                    name=cr.name,
                    body=body,
                )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"{cr!r} is gone, skipping metadata update")
                return
            raise ClusterError(f"cannot update metadata of {cr!r}: {e}") from e

    def _add_finalizer(self, cr: KindCluster):
        finalizers = cr.finalizers
        if FINALIZER in finalizers:
            return
        finalizers.append(FINALIZER)
        cr.metadata["finalizers"] = finalizers
        self._patch_metadata(cr, {"metadata": {"finalizers": finalizers}})

    def _remove_finalizer(self, cr: KindCluster):
        finalizers = cr.finalizers
        if FINALIZER not in finalizers:
            return
        finalizers = [f for f in finalizers if f != FINALIZER]
        cr.metadata["finalizers"] = finalizers
        self._patch_metadata(cr, {"metadata": {"finalizers": finalizers}})

    def _secret_namespace(self, cr: KindCluster, ref: Dict[str, str]) -> str:
        return ref.get("namespace") or cr.namespace or DEFAULT_SECRET_NAMESPACE

    def _publish_connection_details(self, cr: KindCluster, details: Dict[str, bytes]):
        ref = cr.connection_secret_ref
        if ref is None or not details or self.core_api is None:
            return

        namespace = self._secret_namespace(cr, ref)
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=ref["name"],
                namespace=namespace,
                owner_references=(
                    [
                        client.V1OwnerReference(
                            api_version=cr.resource_kind.api_version,
                            kind=cr.resource_kind.kind,
                            name=cr.name,
                            uid=cr.uid,
                            controller=True,
                        )
                    ]
                    if cr.uid
                    else None
                ),
            ),
            type=CONNECTION_SECRET_TYPE,
            data={k: base64.b64encode(v).decode() for k, v in details.items()},
        )

        try:
            self.core_api.create_namespaced_secret(namespace=namespace, body=secret)
            logger.info(f"Published connection secret {namespace}/{ref['name']} for {cr!r}")
        except ApiException as e:
            if e.status != 409:
                raise ClusterError(f"cannot publish connection details: {e}") from e
            try:
                self.core_api.replace_namespaced_secret(
                    name=ref["name"], namespace=namespace, body=secret
                )
            except ApiException as e:
                raise ClusterError(f"cannot publish connection details: {e}") from e

    def _unpublish_connection_details(self, cr: KindCluster):
        ref = cr.connection_secret_ref
        if ref is None or self.core_api is None:
            return
        namespace = self._secret_namespace(cr, ref)
        try:
            self.core_api.delete_namespaced_secret(name=ref["name"], namespace=namespace)
            logger.info(f"Deleted connection secret {namespace}/{ref['name']}")
        except ApiException as e:
            if e.status == 404:
                return
            raise ClusterError(f"cannot unpublish connection details: {e}") from e
