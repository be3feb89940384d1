#!/usr/bin/env python3
# src/usage_tracker.py
"""
ProviderConfig usage tracking.

A resource that uses a ProviderConfig records that fact so the ProviderConfig
cannot be removed while dependents exist. Records are kept in an in-process
registry and, when an API client is supplied, persisted as ProviderConfigUsage
objects owned by the resource.
"""

import logging
import threading
from typing import Dict, Optional, Set

from kubernetes import client
from kubernetes.client.rest import ApiException

from managed import (
    NAMESPACED_PROVIDER_CONFIG_USAGE,
    PROVIDER_CONFIG_USAGE,
    KindCluster,
    UsageTrackingError,
)

logger = logging.getLogger("provider-kind.usage")

PROVIDER_CONFIG_LABEL = "kind.crossplane.io/provider-config"


def resource_ref(cr: KindCluster) -> str:
    """Stable key of a managed resource within the registry."""
    ns = f"{cr.namespace}/" if cr.namespace else ""
    return f"{cr.resource_kind.label}/{ns}{cr.name}"


class ProviderConfigUsageTracker:
    """Registry of provider config name -> dependent resources.

    Registration merges into the existing set under a lock, so concurrent
    reconciles of different resources never drop each other's entries.
    """

    def __init__(self, custom_objects_api: Optional[client.CustomObjectsApi] = None):
        self.api = custom_objects_api
        self._lock = threading.Lock()
        self._usages: Dict[str, Set[str]] = {}

    def track(self, cr: KindCluster):
        """Record that cr uses its provider config. Re-tracking is a no-op."""
        config_name = cr.provider_config_name
        ref = resource_ref(cr)

        if self.api is not None:
            self._persist(cr, config_name)

        with self._lock:
            dependents = self._usages.setdefault(config_name, set())
            if ref not in dependents:
                dependents.add(ref)
                logger.debug(f"Tracking usage of ProviderConfig {config_name} by {ref}")

    def release(self, cr: KindCluster):
        """Forget cr once its external resource is gone."""
        config_name = cr.provider_config_name
        ref = resource_ref(cr)
        with self._lock:
            dependents = self._usages.get(config_name)
            if not dependents:
                return
            dependents.discard(ref)
            if not dependents:
                del self._usages[config_name]
        logger.debug(f"Released usage of ProviderConfig {config_name} by {ref}")

    def dependents(self, config_name: str) -> Set[str]:
        with self._lock:
            return set(self._usages.get(config_name, ()))

    def in_use(self, config_name: str) -> bool:
        return bool(self.dependents(config_name))

    def _persist(self, cr: KindCluster, config_name: str):
        usage_kind = (
            NAMESPACED_PROVIDER_CONFIG_USAGE
            if cr.resource_kind.namespaced
            else PROVIDER_CONFIG_USAGE
        )
        body = {
            "apiVersion": usage_kind.api_version,
            "kind": usage_kind.kind,
            "metadata": {
                "name": cr.uid or cr.name,
                "labels": {PROVIDER_CONFIG_LABEL: config_name},
                "ownerReferences": [
                    {
                        "apiVersion": cr.resource_kind.api_version,
                        "kind": cr.resource_kind.kind,
                        "name": cr.name,
                        "uid": cr.uid,
                    }
                ],
            },
            "providerConfigRef": {"name": config_name},
            "resourceRef": {
                "apiVersion": cr.resource_kind.api_version,
                "kind": cr.resource_kind.kind,
                "name": cr.name,
            },
        }

        try:
            if usage_kind.namespaced:
                body["metadata"]["namespace"] = cr.namespace
                self.api.create_namespaced_custom_object(
                    group=usage_kind.group,
                    version=usage_kind.version,
                    namespace=cr.namespace,
                    plural=usage_kind.plural,
                    body=body,
                )
            else:
                self.api.create_cluster_custom_object(
                    group=usage_kind.group,
                    version=usage_kind.version,
                    plural=usage_kind.plural,
                    body=body,
                )
            logger.info(f"Recorded {usage_kind.kind} of {config_name} for {cr!r}")
        except ApiException as e:
            if e.status == 409:  # Already tracked
                return
            raise UsageTrackingError(f"cannot track ProviderConfig usage: {e}") from e
