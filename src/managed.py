#!/usr/bin/env python3
# src/managed.py
"""
Managed resource model shared by the KIND controller and the reconcile driver.

This module provides:
- Resource kind descriptors for the cluster-scoped and namespaced Cluster CRDs
- A thin wrapper around a Cluster custom object (external name, conditions, status)
- Result types returned by the external client lifecycle operations
- The error hierarchy surfaced to the reconcile driver
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

EXTERNAL_NAME_ANNOTATION = "crossplane.io/external-name"
FINALIZER = "finalizer.managedresource.crossplane.io"

CONNECTION_SECRET_TYPE = "connection.crossplane.io/v1alpha1"
KUBECONFIG_KEY = "kubeconfig"

# Condition types and reasons
TYPE_READY = "Ready"
TYPE_SYNCED = "Synced"

REASON_AVAILABLE = "Available"
REASON_UNAVAILABLE = "Unavailable"
REASON_CREATING = "Creating"
REASON_DELETING = "Deleting"
REASON_RECONCILE_SUCCESS = "ReconcileSuccess"
REASON_RECONCILE_ERROR = "ReconcileError"

NODE_RUNNING = "Running"
NODE_UNKNOWN = "Unknown"


# -----------------------------
# Errors
# -----------------------------


class ClusterError(Exception):
    """Base class for every error surfaced to the reconcile driver."""


class TypeMismatchError(ClusterError):
    """The managed resource handed to the client is not a KIND Cluster."""


class UsageTrackingError(ClusterError):
    """The provider config usage could not be recorded."""


class BackendListError(ClusterError):
    """Existing KIND clusters could not be enumerated."""


class BackendReadError(ClusterError):
    """Kubeconfig or node list of an existing cluster could not be read."""


class PreconditionError(ClusterError):
    """The desired spec is malformed; raised before any backend mutation."""


class BackendMutationError(ClusterError):
    """Creating or deleting the KIND cluster failed."""


# -----------------------------
# Resource kinds
# -----------------------------


@dataclass(frozen=True)
class ResourceKind:
    """Group/version/plural coordinates of a custom resource."""

    group: str
    version: str
    plural: str
    kind: str
    namespaced: bool = False

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    @property
    def label(self) -> str:
        return f"{self.kind}.{self.group}"


CLUSTER = ResourceKind("kind.crossplane.io", "v1alpha1", "clusters", "Cluster")
NAMESPACED_CLUSTER = ResourceKind(
    "kind.m.crossplane.io", "v1alpha1", "clusters", "Cluster", namespaced=True
)

PROVIDER_CONFIG_USAGE = ResourceKind(
    "kind.crossplane.io", "v1beta1", "providerconfigusages", "ProviderConfigUsage"
)
NAMESPACED_PROVIDER_CONFIG_USAGE = ResourceKind(
    "kind.m.crossplane.io",
    "v1beta1",
    "namespacedproviderconfigusages",
    "NamespacedProviderConfigUsage",
    namespaced=True,
)

CLUSTER_KINDS = (CLUSTER, NAMESPACED_CLUSTER)


# -----------------------------
# Lifecycle results
# -----------------------------


@dataclass
class ExternalObservation:
    resource_exists: bool = False
    resource_up_to_date: bool = False
    connection_details: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class ExternalCreation:
    connection_details: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class ExternalUpdate:
    connection_details: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class ExternalDelete:
    pass


# -----------------------------
# Observed state
# -----------------------------


@dataclass
class NodeObservation:
    """Observed state of a single KIND node container."""

    name: str
    role: str
    status: str
    image: str = ""
    ip_address: str = ""
    ipv6_address: str = ""

    def to_status(self) -> Dict[str, Any]:
        out = {"name": self.name, "role": self.role, "status": self.status}
        if self.image:
            out["image"] = self.image
        if self.ip_address:
            out["ipAddress"] = self.ip_address
        if self.ipv6_address:
            out["ipv6Address"] = self.ipv6_address
        return out


@dataclass
class ObservedClusterState:
    ready: bool = False
    nodes: List[NodeObservation] = field(default_factory=list)
    api_server_endpoint: Optional[str] = None

    def to_status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ready": self.ready}
        if self.nodes:
            out["nodes"] = [n.to_status() for n in self.nodes]
        if self.api_server_endpoint is not None:
            out["apiServerEndpoint"] = self.api_server_endpoint
        return out


# -----------------------------
# Conditions
# -----------------------------


def _condition(ctype: str, status: str, reason: str, message: str = "") -> Dict[str, Any]:
    cond = {
        "type": ctype,
        "status": status,
        "reason": reason,
        "lastTransitionTime": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }
    if message:
        cond["message"] = message
    return cond


def available() -> Dict[str, Any]:
    return _condition(TYPE_READY, "True", REASON_AVAILABLE)


def unavailable() -> Dict[str, Any]:
    return _condition(TYPE_READY, "False", REASON_UNAVAILABLE)


def creating() -> Dict[str, Any]:
    return _condition(TYPE_READY, "False", REASON_CREATING)


def deleting() -> Dict[str, Any]:
    return _condition(TYPE_READY, "False", REASON_DELETING)


def reconcile_success() -> Dict[str, Any]:
    return _condition(TYPE_SYNCED, "True", REASON_RECONCILE_SUCCESS)


def reconcile_error(err: Exception) -> Dict[str, Any]:
    return _condition(TYPE_SYNCED, "False", REASON_RECONCILE_ERROR, str(err))


# -----------------------------
# Managed resource wrapper
# -----------------------------


class KindCluster:
    """A Cluster custom object as read from the API server.

    The wrapped dict is deep-copied so that status and annotation changes made
    during a reconcile never leak back into the caller's object.
    """

    def __init__(self, obj: Dict[str, Any], resource_kind: ResourceKind = CLUSTER):
        self.obj = copy.deepcopy(obj)
        self.resource_kind = resource_kind
        self.obj.setdefault("metadata", {})
        self.obj.setdefault("spec", {})
        self.obj.setdefault("status", {})

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.obj["metadata"]

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> Optional[str]:
        if not self.resource_kind.namespaced:
            return None
        return self.metadata.get("namespace", "default")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.get("annotations") or {}

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def being_deleted(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    @property
    def for_provider(self) -> Dict[str, Any]:
        return self.obj["spec"].get("forProvider") or {}

    @property
    def provider_config_name(self) -> str:
        ref = self.obj["spec"].get("providerConfigRef") or {}
        return ref.get("name") or "default"

    @property
    def deletion_policy(self) -> str:
        return self.obj["spec"].get("deletionPolicy") or "Delete"

    @property
    def connection_secret_ref(self) -> Optional[Dict[str, str]]:
        ref = self.obj["spec"].get("writeConnectionSecretToRef")
        if not ref or not ref.get("name"):
            return None
        return ref

    def get_external_name(self) -> str:
        return self.annotations.get(EXTERNAL_NAME_ANNOTATION, "")

    def set_external_name(self, name: str):
        self.metadata.setdefault("annotations", {})
        if self.metadata["annotations"] is None:
            self.metadata["annotations"] = {}
        self.metadata["annotations"][EXTERNAL_NAME_ANNOTATION] = name

    def cluster_name(self) -> str:
        """External name of the KIND cluster, falling back to the resource name."""
        return self.get_external_name() or self.name

    @property
    def conditions(self) -> List[Dict[str, Any]]:
        return list(self.obj["status"].get("conditions") or [])

    def get_condition(self, ctype: str) -> Optional[Dict[str, Any]]:
        for cond in self.conditions:
            if cond.get("type") == ctype:
                return cond
        return None

    def set_conditions(self, *conditions: Dict[str, Any]):
        """Merge conditions by type.

        The transition time of an existing condition is kept when its
        status, reason and message are unchanged.
        """
        current = self.conditions
        for new in conditions:
            for i, old in enumerate(current):
                if old.get("type") != new["type"]:
                    continue
                if all(old.get(k) == new.get(k) for k in ("status", "reason", "message")):
                    break
                current[i] = new
                break
            else:
                current.append(new)
        self.obj["status"]["conditions"] = current

    @property
    def at_provider(self) -> Dict[str, Any]:
        return self.obj["status"].get("atProvider") or {}

    def set_observation(self, observed: ObservedClusterState):
        self.obj["status"]["atProvider"] = observed.to_status()

    def status_patch(self) -> Dict[str, Any]:
        return {
            "status": {
                "atProvider": self.at_provider,
                "conditions": self.conditions,
            }
        }

    def __repr__(self):
        ns = f"{self.namespace}/" if self.namespace else ""
        return f"<{self.resource_kind.label} {ns}{self.name}>"
