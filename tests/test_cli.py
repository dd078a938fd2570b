import logging
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import typer
from typer.testing import CliRunner

from src.common import cli as cli_helpers
from src.controlplane import cli as controlplane_cli
from src.kube.fake import FakeObjectStore
from src.memberroll import cli as memberroll_cli

CONFIG_MAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: {name}
data:
  key: value
"""


def _cluster() -> FakeObjectStore:
    return FakeObjectStore(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "istio-system"}},
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "bookinfo"}},
        {
            "apiVersion": "maistra.io/v2",
            "kind": "ServiceMeshControlPlane",
            "metadata": {"name": "basic", "namespace": "istio-system"},
            "spec": {"version": "v2.0"},
        },
    )


class ControlPlaneCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()
        self.tmpdir = tempfile.TemporaryDirectory()
        self.manifests = Path(self.tmpdir.name)
        for chart, name in (("istio", "istio"), ("istio/charts/grafana", "grafana"), ("istio/charts/pilot", "pilot")):
            directory = self.manifests / chart
            directory.mkdir(parents=True, exist_ok=True)
            (directory / "configmap.yaml").write_text(CONFIG_MAP.format(name=name), encoding="utf-8")
        (self.manifests / "istio" / "NOTES.txt").write_text("notes", encoding="utf-8")

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_charts_are_listed_in_installation_order(self) -> None:
        result = self.runner.invoke(controlplane_cli.app, ["charts", "--manifests", str(self.manifests)])
        self.assertEqual(result.exit_code, 0, result.output)
        charts = [line.split(" ")[0] for line in result.output.strip().splitlines()]
        self.assertEqual(charts, ["istio", "istio/charts/pilot", "istio/charts/grafana"])

    def test_reconcile_installs_rendered_charts(self) -> None:
        store = _cluster()
        with mock.patch.object(controlplane_cli, "connect", return_value=store):
            result = self.runner.invoke(
                controlplane_cli.app,
                ["reconcile", "--namespace", "istio-system", "--manifests", str(self.manifests)],
            )
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Reconciled istio-system/basic", result.output)
        names = sorted(obj["metadata"]["name"] for obj in store.objects("ConfigMap"))
        self.assertEqual(names, ["grafana", "istio", "pilot"])
        self.assertTrue(store.objects("Event"))

    def test_missing_manifest_directory_is_rejected(self) -> None:
        result = self.runner.invoke(
            controlplane_cli.app,
            ["reconcile", "--namespace", "istio-system", "--manifests", str(self.manifests / "missing")],
        )
        self.assertNotEqual(result.exit_code, 0)

    def test_prune_reports_success(self) -> None:
        store = _cluster()
        with mock.patch.object(controlplane_cli, "connect", return_value=store):
            result = self.runner.invoke(controlplane_cli.app, ["prune", "--namespace", "istio-system"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Pruned resources owned by istio-system", result.output)


class MemberRollCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()

    def test_strategy_defaults_to_subnet(self) -> None:
        with mock.patch.object(memberroll_cli, "connect", return_value=_cluster()):
            result = self.runner.invoke(memberroll_cli.app, ["strategy", "--namespace", "istio-system"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("subnet", result.output.splitlines())

    def test_unreadable_config_is_rejected(self) -> None:
        with mock.patch.object(memberroll_cli, "connect", return_value=_cluster()):
            result = self.runner.invoke(
                memberroll_cli.app,
                ["reconcile", "--namespace", "istio-system", "--config", "/nonexistent/config.yaml"],
            )
        self.assertNotEqual(result.exit_code, 0)


class SharedCliHelperTests(unittest.TestCase):
    def test_operator_config_reads_file_and_environment(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "config.yaml"
            path.write_text("operatorNamespace: mesh-operator\ncni:\n  enabled: true\n", encoding="utf-8")
            with mock.patch.dict(os.environ, {"MESH_CNI_ENABLED": "false", "POD_NAMESPACE": ""}):
                config = cli_helpers.operator_config(path)
        self.assertEqual(config.operator_namespace, "mesh-operator")
        self.assertFalse(config.cni.enabled)

    def test_invalid_config_is_a_bad_parameter(self) -> None:
        with self.assertRaises(typer.BadParameter):
            cli_helpers.operator_config(Path("/nonexistent/config.yaml"))

    def test_setup_logging_levels(self) -> None:
        with mock.patch.object(cli_helpers.logging, "basicConfig") as basic_config:
            cli_helpers.setup_logging(True)
            cli_helpers.setup_logging(False)
        levels = [call.kwargs["level"] for call in basic_config.call_args_list]
        self.assertEqual(levels, [logging.DEBUG, logging.INFO])
        self.assertEqual(basic_config.call_args.kwargs["format"], cli_helpers.LOG_FORMAT)


if __name__ == "__main__":
    unittest.main()
