import unittest

from src.common.resource_key import ResourceKey


class ResourceKeyTests(unittest.TestCase):
    def test_string_form_round_trips(self) -> None:
        key = ResourceKey(namespace="istio-system", name="istiod", api_version="apps/v1", kind="Deployment")
        self.assertEqual(str(key), "istio-system/istiod=apps/v1,Kind=Deployment")
        self.assertEqual(ResourceKey.parse(str(key)), key)

    def test_cluster_scoped_key_has_empty_namespace(self) -> None:
        key = ResourceKey.parse("/istiod-istio-system=rbac.authorization.k8s.io/v1,Kind=ClusterRole")
        self.assertEqual(key.namespace, "")
        self.assertEqual(key.name, "istiod-istio-system")
        self.assertEqual(key.group, "rbac.authorization.k8s.io")
        self.assertNotIn("namespace", key.to_reference()["metadata"])

    def test_core_group_is_empty(self) -> None:
        key = ResourceKey.parse("ns/cm=v1,Kind=ConfigMap")
        self.assertEqual(key.group, "")
        self.assertEqual(key.to_reference(), {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cm", "namespace": "ns"}})

    def test_parse_rejects_keys_without_kind(self) -> None:
        with self.assertRaises(ValueError):
            ResourceKey.parse("ns/name=v1")

    def test_from_object_tolerates_missing_metadata(self) -> None:
        key = ResourceKey.from_object({"apiVersion": "v1", "kind": "Namespace"})
        self.assertEqual(key, ResourceKey(namespace="", name="", api_version="v1", kind="Namespace"))


if __name__ == "__main__":
    unittest.main()
