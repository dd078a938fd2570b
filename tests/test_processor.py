import unittest

from src.common.document import Document
from src.common.errors import AggregateError, InvalidError, ReconcileError
from src.common.metadata import KUBERNETES_APP_COMPONENT_KEY, LAST_APPLIED_CONFIG_ANNOTATION, OWNER_KEY
from src.common.status import (
    CONDITION_STATUS_FALSE,
    CONDITION_STATUS_TRUE,
    CONDITION_TYPE_INSTALLED,
    CONDITION_TYPE_RECONCILED,
    ComponentStatus,
)
from src.kube.fake import FakeObjectStore
from src.manifests.processor import ManifestProcessor, expand_list

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: mesh
data:
  mesh: "{value}"
"""

CONFIG_MAP_LIST = """\
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: ConfigMap
    metadata:
      name: first
  - apiVersion: v1
    kind: ConfigMap
    metadata:
      name: second
"""

CLUSTER_ROLE = """\
apiVersion: rbac.authorization.k8s.io/v1
kind: ClusterRole
metadata:
  name: istiod-istio-system
rules: []
"""

WEBHOOK = """\
apiVersion: admissionregistration.k8s.io/v1
kind: MutatingWebhookConfiguration
metadata:
  name: istio-sidecar-injector
webhooks:
  - name: {value}.sidecar-injector.istio.io
"""


class ManifestProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FakeObjectStore()

    def _processor(self, **kwargs) -> ManifestProcessor:
        return ManifestProcessor(
            self.store,
            owner_namespace="istio-system",
            app_instance="istio-system",
            app_version="2.0.0-1",
            **kwargs,
        )

    def test_creates_objects_with_ownership_metadata(self) -> None:
        status = ComponentStatus(resource="pilot")
        err = self._processor().process_manifests(
            [("pilot/configmap.yaml", CONFIG_MAP.format(value="a")), ("pilot/clusterrole.yaml", CLUSTER_ROLE)],
            "pilot",
            status,
        )
        self.assertIsNone(err)

        config_map = Document(self.store.get("v1", "ConfigMap", "istio-system", "mesh"))
        self.assertEqual(config_map.label(OWNER_KEY), "istio-system")
        self.assertEqual(config_map.label(KUBERNETES_APP_COMPONENT_KEY), "pilot")
        self.assertIsNotNone(config_map.annotation(LAST_APPLIED_CONFIG_ANNOTATION))

        cluster_role = Document(self.store.get("rbac.authorization.k8s.io/v1", "ClusterRole", None, "istiod-istio-system"))
        self.assertEqual(cluster_role.namespace, "")

        self.assertEqual(len(status.children), 2)
        for child in status.children:
            self.assertEqual(child.get_condition(CONDITION_TYPE_INSTALLED).status, CONDITION_STATUS_TRUE)
            self.assertEqual(child.get_condition(CONDITION_TYPE_RECONCILED).status, CONDITION_STATUS_TRUE)

    def test_second_pass_writes_nothing(self) -> None:
        manifests = [("pilot/configmap.yaml", CONFIG_MAP.format(value="a"))]
        self._processor().process_manifests(manifests, "pilot")
        self.store.clear_actions()

        processor = self._processor()
        self.assertIsNone(processor.process_manifests(manifests, "pilot"))
        self.assertEqual(self.store.writes(), [])
        self.assertEqual(processor.stats.unchanged, 1)

    def test_changed_manifest_is_patched(self) -> None:
        self._processor().process_manifests([("pilot/configmap.yaml", CONFIG_MAP.format(value="a"))], "pilot")
        processor = self._processor()
        processor.process_manifests([("pilot/configmap.yaml", CONFIG_MAP.format(value="b"))], "pilot")
        self.assertEqual(processor.stats.patched, 1)
        self.assertEqual(self.store.get("v1", "ConfigMap", "istio-system", "mesh")["data"], {"mesh": "b"})

    def test_list_kinds_are_expanded(self) -> None:
        self._processor().process_manifests([("pilot/list.yaml", CONFIG_MAP_LIST)], "pilot")
        names = sorted(obj["metadata"]["name"] for obj in self.store.objects("ConfigMap"))
        self.assertEqual(names, ["first", "second"])

    def test_non_yaml_manifests_are_skipped(self) -> None:
        err = self._processor().process_manifests([("pilot/NOTES.txt", "not: [yaml")], "pilot")
        self.assertIsNone(err)
        self.assertEqual(self.store.actions, [])

    def test_unparsable_manifest_does_not_stop_others(self) -> None:
        err = self._processor().process_manifests(
            [("pilot/broken.yaml", "kind: [unclosed"), ("pilot/configmap.yaml", CONFIG_MAP.format(value="a"))],
            "pilot",
        )
        self.assertIsInstance(err, ReconcileError)
        self.assertTrue(self.store.exists("v1", "ConfigMap", "istio-system", "mesh"))

    def test_rejected_update_is_recreated(self) -> None:
        self._processor().process_manifests([("pilot/configmap.yaml", CONFIG_MAP.format(value="a"))], "pilot")
        self.store.fail_on("update", "ConfigMap", InvalidError("field is immutable"), times=1)
        self.store.clear_actions()

        processor = self._processor()
        err = processor.process_manifests([("pilot/configmap.yaml", CONFIG_MAP.format(value="b"))], "pilot")
        self.assertIsNone(err)
        self.assertEqual(processor.stats.recreated, 1)
        verbs = [action[0] for action in self.store.writes()]
        self.assertEqual(verbs, ["update", "delete", "create"])
        self.assertEqual(self.store.get("v1", "ConfigMap", "istio-system", "mesh")["data"], {"mesh": "b"})

    def test_webhooks_are_never_recreated(self) -> None:
        self._processor().process_manifests([("injector/webhook.yaml", WEBHOOK.format(value="a"))], "injector")
        self.store.fail_on("update", "MutatingWebhookConfiguration", InvalidError("rejected"))
        self.store.clear_actions()

        status = ComponentStatus(resource="injector")
        processor = self._processor()
        err = processor.process_manifests([("injector/webhook.yaml", WEBHOOK.format(value="b"))], "injector", status)
        self.assertIsInstance(err, InvalidError)
        self.assertNotIn("delete", [action[0] for action in self.store.writes()])
        self.assertEqual(processor.stats.failed, 1)
        self.assertEqual(status.children[0].get_condition(CONDITION_TYPE_RECONCILED).status, CONDITION_STATUS_FALSE)

    def test_errors_are_aggregated_per_object(self) -> None:
        self.store.fail_on("create", "ConfigMap", ReconcileError("denied"))
        err = self._processor().process_manifests(
            [("pilot/list.yaml", CONFIG_MAP_LIST), ("pilot/clusterrole.yaml", CLUSTER_ROLE)],
            "pilot",
        )
        self.assertIsInstance(err, AggregateError)
        self.assertEqual(len(err.errors), 2)
        self.assertTrue(self.store.exists("rbac.authorization.k8s.io/v1", "ClusterRole", None, "istiod-istio-system"))

    def test_hooks_run_around_writes(self) -> None:
        seen = []

        def pre_process(doc: Document) -> None:
            doc.set_annotation("example.com/hooked", "yes")

        processor = self._processor(pre_process=pre_process, post_create=lambda doc: seen.append(doc.resource_version))
        processor.process_manifests([("pilot/configmap.yaml", CONFIG_MAP.format(value="a"))], "pilot")
        stored = Document(self.store.get("v1", "ConfigMap", "istio-system", "mesh"))
        self.assertEqual(stored.annotation("example.com/hooked"), "yes")
        self.assertEqual(seen, [stored.resource_version])


class ExpandListTests(unittest.TestCase):
    def test_nested_lists_are_flattened(self) -> None:
        nested = {
            "kind": "List",
            "items": [
                {"kind": "ConfigMapList", "items": [{"kind": "ConfigMap", "metadata": {"name": "a"}}]},
                {"kind": "Service", "metadata": {"name": "b"}},
            ],
        }
        self.assertEqual([item["kind"] for item in expand_list(nested)], ["ConfigMap", "Service"])

    def test_list_without_items_is_an_error(self) -> None:
        with self.assertRaises(ReconcileError):
            expand_list({"kind": "List"})


if __name__ == "__main__":
    unittest.main()
