import unittest

from src.common.document import Document
from src.common.errors import ConflictError
from src.common.lifecycle import (
    Lifecycle,
    add_finalizer,
    handle_finalization,
    lifecycle_of,
    remove_finalizer,
)
from src.kube.fake import FakeObjectStore

FINALIZER = "maistra.io/istio-operator"


def _config_map(**metadata) -> dict:
    meta = {"name": "cm", "namespace": "ns"}
    meta.update(metadata)
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": meta}


class LifecycleStateTests(unittest.TestCase):
    def test_states(self) -> None:
        self.assertIs(lifecycle_of(Document(_config_map()), FINALIZER), Lifecycle.ACTIVE)
        finalizing = Document(_config_map(deletionTimestamp="t", finalizers=[FINALIZER]))
        self.assertIs(lifecycle_of(finalizing, FINALIZER), Lifecycle.FINALIZING)
        gone = Document(_config_map(deletionTimestamp="t", finalizers=["other"]))
        self.assertIs(lifecycle_of(gone, FINALIZER), Lifecycle.GONE)

    def test_add_and_remove_are_idempotent(self) -> None:
        doc = Document(_config_map(finalizers=["other"]))
        self.assertTrue(add_finalizer(doc, FINALIZER))
        self.assertFalse(add_finalizer(doc, FINALIZER))
        self.assertEqual(doc.finalizers, sorted(["other", FINALIZER]))
        self.assertTrue(remove_finalizer(doc, FINALIZER))
        self.assertFalse(remove_finalizer(doc, FINALIZER))
        self.assertEqual(doc.finalizers, ["other"])


class HandleFinalizationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeObjectStore(_config_map())
        self.calls = []

    def _get(self) -> Document:
        return Document(self.store.get("v1", "ConfigMap", "ns", "cm"))

    def _finalize(self, result: bool):
        def finalize(doc: Document) -> bool:
            self.calls.append(doc.name)
            return result

        return finalize

    def test_active_object_gets_finalizer_and_continues(self) -> None:
        doc = self._get()
        proceed, state = handle_finalization(self.store, doc, FINALIZER, self._finalize(True))
        self.assertTrue(proceed)
        self.assertIs(state, Lifecycle.ACTIVE)
        self.assertEqual(self._get().finalizers, [FINALIZER])
        self.assertEqual(doc.resource_version, self._get().resource_version)
        self.assertEqual(self.calls, [])

    def test_conflict_while_adding_finalizer_stops_pass(self) -> None:
        self.store.fail_on("update", "ConfigMap", ConflictError("stale"), times=1)
        proceed, state = handle_finalization(self.store, self._get(), FINALIZER, self._finalize(True))
        self.assertFalse(proceed)
        self.assertIs(state, Lifecycle.ACTIVE)

    def test_finalizing_object_is_released_after_cleanup(self) -> None:
        handle_finalization(self.store, self._get(), FINALIZER, self._finalize(True))
        self.store.delete("v1", "ConfigMap", "ns", "cm")
        self.assertTrue(self.store.exists("v1", "ConfigMap", "ns", "cm"))

        proceed, state = handle_finalization(self.store, self._get(), FINALIZER, self._finalize(True))
        self.assertFalse(proceed)
        self.assertIs(state, Lifecycle.GONE)
        self.assertEqual(self.calls, ["cm"])
        self.assertFalse(self.store.exists("v1", "ConfigMap", "ns", "cm"))

    def test_finalizer_kept_until_cleanup_succeeds(self) -> None:
        handle_finalization(self.store, self._get(), FINALIZER, self._finalize(True))
        self.store.delete("v1", "ConfigMap", "ns", "cm")

        proceed, state = handle_finalization(self.store, self._get(), FINALIZER, self._finalize(False))
        self.assertFalse(proceed)
        self.assertIs(state, Lifecycle.FINALIZING)
        self.assertEqual(self._get().finalizers, [FINALIZER])


if __name__ == "__main__":
    unittest.main()
