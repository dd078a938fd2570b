import unittest

from src.common.errors import ReconcileError
from src.kube.fake import FakeObjectStore
from src.memberroll.addons import KIALI_API_VERSION, KialiReconciler


def _kiali(namespaces=None) -> dict:
    spec = {"deployment": {}}
    if namespaces is not None:
        spec["deployment"]["accessible_namespaces"] = namespaces
    return {
        "apiVersion": KIALI_API_VERSION,
        "kind": "Kiali",
        "metadata": {"name": "kiali", "namespace": "istio-system"},
        "spec": spec,
    }


class KialiReconcilerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeObjectStore()
        self.store.register_kind(KIALI_API_VERSION, "Kiali")

    def test_updates_accessible_namespaces(self) -> None:
        self.store.add(_kiali(["istio-system"]))
        changed = KialiReconciler(self.store).reconcile_kiali("kiali", "istio-system", ["b", "istio-system", "a", "b"])
        self.assertTrue(changed)
        kiali = self.store.get(KIALI_API_VERSION, "Kiali", "istio-system", "kiali")
        self.assertEqual(kiali["spec"]["deployment"]["accessible_namespaces"], ["a", "b", "istio-system"])

    def test_skips_when_already_current(self) -> None:
        self.store.add(_kiali(["a", "istio-system"]))
        self.store.clear_actions()
        changed = KialiReconciler(self.store).reconcile_kiali("kiali", "istio-system", ["istio-system", "a"])
        self.assertFalse(changed)
        self.assertEqual(self.store.writes(), [])

    def test_missing_kiali_is_ignored(self) -> None:
        self.assertFalse(KialiReconciler(self.store).reconcile_kiali("kiali", "istio-system", ["a"]))
        self.store.unregister_kind(KIALI_API_VERSION, "Kiali")
        self.assertFalse(KialiReconciler(self.store).reconcile_kiali("kiali", "istio-system", ["a"]))

    def test_other_errors_propagate(self) -> None:
        self.store.add(_kiali())
        self.store.fail_on("patch", "Kiali", ReconcileError("boom"))
        with self.assertRaises(ReconcileError):
            KialiReconciler(self.store).reconcile_kiali("kiali", "istio-system", ["a"])


if __name__ == "__main__":
    unittest.main()
