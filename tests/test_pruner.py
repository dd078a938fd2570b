import unittest

from src.common.errors import ReconcileError
from src.common.metadata import MESH_GENERATION_KEY, OWNER_KEY
from src.controlplane.pruner import DELETE_ALL, Pruner
from src.kube.fake import FakeObjectStore


def _owned(kind: str, name: str, owner: str, generation: str, api_version: str = "v1", namespace: str = "istio-system") -> dict:
    metadata = {
        "name": name,
        "labels": {OWNER_KEY: owner},
        "annotations": {MESH_GENERATION_KEY: generation},
    }
    if namespace:
        metadata["namespace"] = namespace
    return {"apiVersion": api_version, "kind": kind, "metadata": metadata}


class PrunerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeObjectStore(
            _owned("ConfigMap", "current", "istio-system", "2.0.0-2"),
            _owned("ConfigMap", "stale", "istio-system", "2.0.0-1"),
            _owned("Service", "stale-svc", "istio-system", "2.0.0-1"),
            _owned("ConfigMap", "other-mesh", "other-system", "2.0.0-1", namespace="other-system"),
            _owned("ClusterRole", "stale-role", "istio-system", "2.0.0-1", "rbac.authorization.k8s.io/v1", namespace=""),
            {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "unowned", "namespace": "istio-system"}},
        )
        self.pruner = Pruner(self.store, "istio-system")

    def _names(self, kind: str):
        return sorted(obj["metadata"]["name"] for obj in self.store.objects(kind))

    def test_only_stale_owned_objects_are_deleted(self) -> None:
        self.assertIsNone(self.pruner.prune("2.0.0-2"))
        self.assertEqual(self._names("ConfigMap"), ["current", "other-mesh", "unowned"])
        self.assertEqual(self._names("Service"), [])
        self.assertEqual(self._names("ClusterRole"), [])

    def test_delete_all_removes_every_owned_object(self) -> None:
        self.assertIsNone(self.pruner.prune(DELETE_ALL))
        self.assertEqual(self._names("ConfigMap"), ["other-mesh", "unowned"])

    def test_unserved_custom_kinds_are_skipped(self) -> None:
        with self.assertLogs("src.controlplane.pruner", level="INFO") as logs:
            self.pruner.prune("2.0.0-2")
        self.assertIn("INFO:src.controlplane.pruner:Route is not served by this cluster, nothing to prune", logs.output)
        self.assertIn("INFO:src.controlplane.pruner:Kiali is not served by this cluster, nothing to prune", logs.output)
        listed = {action[1] for action in self.store.actions if action[0] == "list"}
        self.assertNotIn("Kiali", listed)
        self.assertIn("Route", listed)

    def test_served_custom_kinds_are_pruned(self) -> None:
        self.store.register_kind("kiali.io/v1alpha1", "Kiali")
        self.store.add(_owned("Kiali", "kiali", "istio-system", "2.0.0-1", "kiali.io/v1alpha1"))
        self.assertIsNone(self.pruner.prune("2.0.0-2"))
        self.assertEqual(self.store.objects("Kiali"), [])

    def test_delete_failures_are_collected_and_other_kinds_continue(self) -> None:
        self.store.fail_on("delete", "Service", ReconcileError("forbidden"))
        err = self.pruner.prune("2.0.0-2")
        self.assertIsInstance(err, ReconcileError)
        self.assertIn("stale-svc", str(err))
        self.assertEqual(self._names("ClusterRole"), [])

    def test_list_failures_are_reported(self) -> None:
        self.store.fail_on("list", "ConfigMap", ReconcileError("timeout"))
        err = self.pruner.prune("2.0.0-2")
        self.assertIn("ConfigMap", str(err))
        self.assertEqual(self._names("Service"), [])


if __name__ == "__main__":
    unittest.main()
