import unittest

from src.common.config import CNIConfig, OperatorConfig
from src.common.document import Document
from src.common.errors import (
    ConflictError,
    MembershipConflictError,
    NamespaceTerminatingError,
    ReconcileError,
    is_conflict,
)
from src.common.metadata import MEMBER_OF_KEY, OWNER_KEY
from src.kube.fake import FakeObjectStore
from src.memberroll.namespace_reconciler import NAD_API_VERSION, NAD_KIND, NamespaceReconciler
from src.memberroll.networking import NetworkingStrategy

MESH_NAMESPACE = "istio-system"
RBAC = "rbac.authorization.k8s.io/v1"


def _namespace(name: str, **labels) -> dict:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, "labels": dict(labels)}}


def _role_binding(name: str, namespace: str, labels: dict) -> dict:
    return {
        "apiVersion": RBAC,
        "kind": "RoleBinding",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "roleRef": {"apiGroup": "rbac.authorization.k8s.io", "kind": "ClusterRole", "name": "istiod-istio-system"},
        "subjects": [{"kind": "ServiceAccount", "name": "istiod", "namespace": MESH_NAMESPACE}],
    }


def _nad(name: str, namespace: str) -> dict:
    return {
        "apiVersion": NAD_API_VERSION,
        "kind": NAD_KIND,
        "metadata": {"name": name, "namespace": namespace, "labels": {MEMBER_OF_KEY: MESH_NAMESPACE}},
    }


class RecordingStrategy(NetworkingStrategy):
    name = "recording"

    def __init__(self) -> None:
        self.calls = []

    def reconcile_namespace_in_mesh(self, namespace: str) -> None:
        self.calls.append(("join", namespace))

    def remove_namespace_from_mesh(self, namespace: str) -> None:
        self.calls.append(("leave", namespace))


class NamespaceReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeObjectStore(
            _namespace(MESH_NAMESPACE),
            _namespace("bookinfo"),
            _role_binding("istiod-mesh", MESH_NAMESPACE, {OWNER_KEY: MESH_NAMESPACE}),
            _role_binding("unrelated", MESH_NAMESPACE, {}),
        )
        self.strategy = RecordingStrategy()

    def _reconciler(self, cni: bool = False, version: str = "v2.0") -> NamespaceReconciler:
        config = OperatorConfig(cni=CNIConfig(enabled=cni))
        return NamespaceReconciler(self.store, config, MESH_NAMESPACE, version, cni, self.strategy)

    def _namespace_doc(self, name: str = "bookinfo") -> Document:
        return Document(self.store.get("v1", "Namespace", None, name))

    def _names(self, kind: str, namespace: str):
        return sorted(obj["metadata"]["name"] for obj in self.store.objects(kind) if obj["metadata"].get("namespace") == namespace)

    def test_join_labels_namespace_and_mirrors_role_bindings(self) -> None:
        self._reconciler().reconcile_namespace_in_mesh("bookinfo")

        self.assertEqual(self._namespace_doc().label(MEMBER_OF_KEY), MESH_NAMESPACE)
        self.assertEqual(self._names("RoleBinding", "bookinfo"), ["istiod-mesh"])
        mirror = Document(self.store.get(RBAC, "RoleBinding", "bookinfo", "istiod-mesh"))
        self.assertEqual(mirror.label(MEMBER_OF_KEY), MESH_NAMESPACE)
        self.assertEqual(mirror.get("roleRef.name"), "istiod-istio-system")
        self.assertEqual(self.strategy.calls, [("join", "bookinfo")])

    def test_join_is_idempotent(self) -> None:
        self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.store.clear_actions()
        self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertEqual(self.store.writes(), [])

    def test_obsolete_role_bindings_are_deleted(self) -> None:
        self.store.add(_role_binding("old-mesh-binding", "bookinfo", {MEMBER_OF_KEY: MESH_NAMESPACE}))
        self.store.add(_role_binding("user-binding", "bookinfo", {}))
        self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertEqual(self._names("RoleBinding", "bookinfo"), ["istiod-mesh", "user-binding"])

    def test_namespace_of_another_mesh_is_refused(self) -> None:
        self.store.add(_namespace("bookinfo", **{MEMBER_OF_KEY: "other-mesh"}))
        with self.assertRaises(MembershipConflictError) as ctx:
            self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertIn("already a member of other-mesh", str(ctx.exception))
        self.assertEqual(self._namespace_doc().label(MEMBER_OF_KEY), "other-mesh")
        self.assertEqual(self.store.writes(), [])
        self.assertEqual(self.strategy.calls, [])

    def test_terminating_namespace_is_refused(self) -> None:
        terminating = _namespace("bookinfo")
        terminating["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        self.store.add(terminating)
        with self.assertRaises(NamespaceTerminatingError):
            self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        with self.assertRaises(NamespaceTerminatingError):
            self._reconciler().remove_namespace_from_mesh("bookinfo")

    def test_label_conflict_is_wrapped(self) -> None:
        self.store.fail_on("update", "Namespace", ConflictError("stale namespace"))
        with self.assertRaises(ReconcileError) as ctx:
            self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertTrue(is_conflict(ctx.exception))
        self.assertIn("member-of label", str(ctx.exception))

    def test_cni_network_attachment_is_created(self) -> None:
        self.store.add(_nad("v1-1-istio-cni", "bookinfo"))
        self._reconciler(cni=True).reconcile_namespace_in_mesh("bookinfo")
        self.assertEqual(self._names(NAD_KIND, "bookinfo"), ["v2-0-istio-cni"])
        nad = Document(self.store.get(NAD_API_VERSION, NAD_KIND, "bookinfo", "v2-0-istio-cni"))
        self.assertEqual(nad.label(MEMBER_OF_KEY), MESH_NAMESPACE)

    def test_unknown_cni_version_is_an_error(self) -> None:
        with self.assertRaises(ReconcileError):
            self._reconciler(cni=True, version="v9.9").reconcile_namespace_in_mesh("bookinfo")
        self.assertIsNone(self._namespace_doc().label(MEMBER_OF_KEY))

    def test_failed_role_binding_mirror_leaves_namespace_unlabeled(self) -> None:
        self.store.fail_on("create", "RoleBinding", ReconcileError("forbidden"), times=1)
        with self.assertRaises(ReconcileError):
            self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertIsNone(self._namespace_doc().label(MEMBER_OF_KEY))

        self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.assertEqual(self._namespace_doc().label(MEMBER_OF_KEY), MESH_NAMESPACE)

    def test_network_attachments_are_removed_without_cni(self) -> None:
        self.store.add(_nad("v2-0-istio-cni", "bookinfo"))
        self._reconciler(cni=False).reconcile_namespace_in_mesh("bookinfo")
        self.assertEqual(self._names(NAD_KIND, "bookinfo"), [])

    def test_leave_removes_mesh_resources(self) -> None:
        self.store.add(_role_binding("user-binding", "bookinfo", {}))
        self._reconciler(cni=True).reconcile_namespace_in_mesh("bookinfo")
        self._reconciler(cni=True).remove_namespace_from_mesh("bookinfo")

        self.assertIsNone(self._namespace_doc().label(MEMBER_OF_KEY))
        self.assertEqual(self._names("RoleBinding", "bookinfo"), ["user-binding"])
        self.assertEqual(self._names(NAD_KIND, "bookinfo"), [])
        self.assertEqual(self.strategy.calls, [("join", "bookinfo"), ("leave", "bookinfo")])

    def test_leave_keeps_membership_of_another_mesh(self) -> None:
        self.store.add(_namespace("bookinfo", **{MEMBER_OF_KEY: "other-mesh"}))
        self.store.add(_role_binding("other-binding", "bookinfo", {MEMBER_OF_KEY: "other-mesh"}))
        self._reconciler().remove_namespace_from_mesh("bookinfo")
        self.assertEqual(self._namespace_doc().label(MEMBER_OF_KEY), "other-mesh")
        self.assertEqual(self._names("RoleBinding", "bookinfo"), ["other-binding"])
        self.assertNotIn("update", [action[0] for action in self.store.writes()])

    def test_leaving_missing_namespace_is_a_no_op(self) -> None:
        self._reconciler().remove_namespace_from_mesh("deleted")
        self.assertEqual(self.strategy.calls, [])

    def test_leave_collects_errors_but_still_unlabels(self) -> None:
        self._reconciler().reconcile_namespace_in_mesh("bookinfo")
        self.store.fail_on("delete", "RoleBinding", ReconcileError("forbidden"))
        with self.assertRaises(ReconcileError):
            self._reconciler().remove_namespace_from_mesh("bookinfo")
        self.assertIsNone(self._namespace_doc().label(MEMBER_OF_KEY))


if __name__ == "__main__":
    unittest.main()
