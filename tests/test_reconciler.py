#!/usr/bin/env python3
# tests/test_reconciler.py
"""
Test suite for the reconcile driver.

The external client is mocked; these tests verify how observations turn into
create/delete calls, finalizer handling, status patches and connection
secrets.
"""

import base64
import os
import sys
import unittest
from unittest.mock import Mock

from kubernetes.client.rest import ApiException

# Add src directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from managed import (
    EXTERNAL_NAME_ANNOTATION,
    FINALIZER,
    NAMESPACED_CLUSTER,
    BackendListError,
    BackendMutationError,
    ExternalCreation,
    ExternalDelete,
    ExternalObservation,
    ExternalUpdate,
    UsageTrackingError,
)
from cluster_controller import ExternalClient
from reconciler import Reconciler


def make_obj(name="dev", finalizers=None, deleting=False, secret_ref=None, policy=None, namespace=None):
    metadata = {"name": name, "uid": "uid-1", "finalizers": finalizers or []}
    if namespace:
        metadata["namespace"] = namespace
    if deleting:
        metadata["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    spec = {"forProvider": {}}
    if secret_ref:
        spec["writeConnectionSecretToRef"] = secret_ref
    if policy:
        spec["deletionPolicy"] = policy
    return {"metadata": metadata, "spec": spec}


class TestReconciler(unittest.TestCase):
    def setUp(self):
        self.api = Mock()
        self.core_api = Mock()
        self.external = Mock()
        self.external.observe.return_value = ExternalObservation(resource_exists=False)
        self.external.create.return_value = ExternalCreation(
            connection_details={"kubeconfig": b"apiVersion: v1"}
        )
        self.external.update.return_value = ExternalUpdate()
        self.external.delete.return_value = ExternalDelete()
        self.connector = Mock()
        self.connector.connect.return_value = self.external
        self.reconciler = Reconciler(self.api, self.core_api, self.connector)

    def status_body(self):
        return self.api.patch_cluster_custom_object_status.call_args[1]["body"]

    def condition(self, ctype):
        for cond in self.status_body()["status"]["conditions"]:
            if cond["type"] == ctype:
                return cond
        return None

    def test_absent_resource_is_created(self):
        def create(cr):
            cr.set_external_name(cr.name)
            return self.external.create.return_value

        self.external.create.side_effect = create

        result = self.reconciler.reconcile(make_obj())

        self.assertEqual(result, "created")
        self.external.create.assert_called_once()
        self.external.disconnect.assert_called_once()
        bodies = [c[1]["body"] for c in self.api.patch_cluster_custom_object.call_args_list]
        self.assertIn({"metadata": {"finalizers": [FINALIZER]}}, bodies)
        self.assertIn({"metadata": {"annotations": {EXTERNAL_NAME_ANNOTATION: "dev"}}}, bodies)
        self.assertEqual(self.condition("Synced")["reason"], "ReconcileSuccess")

    def test_existing_resource_is_observed(self):
        self.external.observe.return_value = ExternalObservation(
            resource_exists=True,
            resource_up_to_date=True,
            connection_details={"kubeconfig": b"kc"},
        )

        result = self.reconciler.reconcile(make_obj(finalizers=[FINALIZER]))

        self.assertEqual(result, "observed")
        self.external.create.assert_not_called()
        self.external.update.assert_not_called()
        self.api.patch_cluster_custom_object.assert_not_called()
        self.api.patch_cluster_custom_object_status.assert_called_once()

    def test_not_up_to_date_calls_update(self):
        self.external.observe.return_value = ExternalObservation(
            resource_exists=True, resource_up_to_date=False
        )
        self.reconciler.reconcile(make_obj(finalizers=[FINALIZER]))
        self.external.update.assert_called_once()

    def test_connection_secret_published(self):
        self.reconciler.reconcile(
            make_obj(secret_ref={"name": "dev-kubeconfig", "namespace": "apps"})
        )

        kwargs = self.core_api.create_namespaced_secret.call_args[1]
        self.assertEqual(kwargs["namespace"], "apps")
        secret = kwargs["body"]
        self.assertEqual(secret.metadata.name, "dev-kubeconfig")
        self.assertEqual(secret.type, "connection.crossplane.io/v1alpha1")
        self.assertEqual(base64.b64decode(secret.data["kubeconfig"]), b"apiVersion: v1")

    def test_connection_secret_replaced_when_present(self):
        self.core_api.create_namespaced_secret.side_effect = ApiException(status=409)

        self.reconciler.reconcile(make_obj(secret_ref={"name": "dev-kubeconfig"}))

        kwargs = self.core_api.replace_namespaced_secret.call_args[1]
        self.assertEqual(kwargs["name"], "dev-kubeconfig")
        self.assertEqual(kwargs["namespace"], "crossplane-system")

    def test_connect_failure_recorded(self):
        self.connector.connect.side_effect = UsageTrackingError("cannot track ProviderConfig usage")

        result = self.reconciler.reconcile(make_obj())

        self.assertEqual(result, "error")
        synced = self.condition("Synced")
        self.assertEqual(synced["status"], "False")
        self.assertEqual(synced["reason"], "ReconcileError")
        self.assertIn("cannot track ProviderConfig usage", synced["message"])
        self.external.observe.assert_not_called()

    def test_observe_failure_recorded(self):
        self.external.observe.side_effect = BackendListError("cannot list KIND clusters: boom")

        result = self.reconciler.reconcile(make_obj())

        self.assertEqual(result, "error")
        self.assertIn("cannot list KIND clusters", self.condition("Synced")["message"])
        self.external.create.assert_not_called()
        self.external.disconnect.assert_called_once()

    def test_create_failure_keeps_external_name(self):
        def create(cr):
            cr.set_external_name(cr.name)
            raise BackendMutationError("cannot create KIND cluster: boom")

        self.external.create.side_effect = create

        result = self.reconciler.reconcile(make_obj())

        self.assertEqual(result, "error")
        bodies = [c[1]["body"] for c in self.api.patch_cluster_custom_object.call_args_list]
        self.assertIn({"metadata": {"annotations": {EXTERNAL_NAME_ANNOTATION: "dev"}}}, bodies)
        self.assertEqual(self.condition("Synced")["reason"], "ReconcileError")

    def test_misshapen_spec_recorded_as_reconcile_error(self):
        """A forProvider of the wrong shape ends in a Synced=False condition."""
        self.connector.connect.return_value = ExternalClient(
            provider=Mock(list=Mock(return_value=[])), inspector=Mock()
        )
        obj = make_obj()
        obj["spec"]["forProvider"] = {"nodes": ["worker"]}

        result = self.reconciler.reconcile(obj)

        self.assertEqual(result, "error")
        synced = self.condition("Synced")
        self.assertEqual(synced["status"], "False")
        self.assertEqual(synced["reason"], "ReconcileError")
        self.assertIn("cannot parse Cluster spec", synced["message"])

    def test_deleting_existing_cluster(self):
        self.external.observe.return_value = ExternalObservation(resource_exists=True)

        result = self.reconciler.reconcile(make_obj(finalizers=[FINALIZER], deleting=True))

        self.assertEqual(result, "deleting")
        self.external.delete.assert_called_once()
        self.api.patch_cluster_custom_object.assert_not_called()

    def test_deleted_cluster_is_finalized(self):
        result = self.reconciler.reconcile(
            make_obj(
                finalizers=[FINALIZER, "other"],
                deleting=True,
                secret_ref={"name": "dev-kubeconfig", "namespace": "apps"},
            )
        )

        self.assertEqual(result, "finalized")
        self.external.delete.assert_not_called()
        self.connector.usage.release.assert_called_once()
        self.core_api.delete_namespaced_secret.assert_called_once_with(
            name="dev-kubeconfig", namespace="apps"
        )
        self.api.patch_cluster_custom_object.assert_called_once()
        body = self.api.patch_cluster_custom_object.call_args[1]["body"]
        self.assertEqual(body, {"metadata": {"finalizers": ["other"]}})

    def test_orphan_policy_skips_delete(self):
        self.external.observe.return_value = ExternalObservation(resource_exists=True)

        result = self.reconciler.reconcile(
            make_obj(finalizers=[FINALIZER], deleting=True, policy="Orphan")
        )

        self.assertEqual(result, "finalized")
        self.external.delete.assert_not_called()

    def test_namespaced_kind_uses_namespaced_api(self):
        reconciler = Reconciler(
            self.api, self.core_api, self.connector, resource_kind=NAMESPACED_CLUSTER
        )

        reconciler.reconcile(make_obj(namespace="team-a"))

        kwargs = self.api.patch_namespaced_custom_object_status.call_args[1]
        self.assertEqual(kwargs["group"], "kind.m.crossplane.io")
        self.assertEqual(kwargs["namespace"], "team-a")
        self.api.patch_cluster_custom_object_status.assert_not_called()

    def test_status_patch_failure_is_logged(self):
        self.api.patch_cluster_custom_object_status.side_effect = ApiException(status=500)
        self.assertEqual(self.reconciler.reconcile(make_obj()), "created")

    def test_list_resources(self):
        self.api.list_cluster_custom_object.return_value = {"items": [{"metadata": {"name": "a"}}]}
        self.assertEqual(self.reconciler.list_resources(), [{"metadata": {"name": "a"}}])
        self.api.list_cluster_custom_object.assert_called_once_with(
            group="kind.crossplane.io", version="v1alpha1", plural="clusters"
        )


if __name__ == "__main__":
    unittest.main()
