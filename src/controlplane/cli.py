from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from src.common.cli import operator_config, setup_logging
from src.common.document import Document
from src.common.events import StoreEventRecorder
from src.controlplane.pruner import DELETE_ALL, Pruner
from src.controlplane.readiness import ReadinessAggregator
from src.controlplane.reconciler import CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, ControlPlaneController
from src.controlplane.rendering import DirectoryRenderer, charts_in_installation_order
from src.kube.dynamic import connect

app = typer.Typer(help="Reconcile service mesh control planes against pre-rendered manifests.")


@app.command()
def reconcile(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace of the control plane."),
    name: str = typer.Option("basic", "--name", help="Name of the ServiceMeshControlPlane."),
    manifests: Path = typer.Option(
        ...,
        "--manifests",
        "-m",
        help="Directory of rendered charts, one sub-directory per chart.",
    ),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator configuration YAML."),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig file to use."),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use."),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Pause after a component until its workloads are ready.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a single reconcile pass for one control plane."""
    setup_logging(verbose)
    if not manifests.is_dir():
        raise typer.BadParameter(f"Manifest directory {manifests} does not exist")
    store = connect(kubeconfig, context)
    controller = ControlPlaneController(
        store,
        operator_config(config),
        DirectoryRenderer(manifests),
        events=StoreEventRecorder(store),
        wait_for_components=wait,
    )
    result = controller.reconcile(namespace, name)
    if result.requeue:
        typer.echo(f"Reconcile of {namespace}/{name} incomplete, retry in {result.requeue_after:.0f}s")
    else:
        typer.echo(f"Reconciled {namespace}/{name}")


@app.command()
def prune(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace owning the resources."),
    generation: str = typer.Option(
        DELETE_ALL,
        "--generation",
        "-g",
        help="Keep resources stamped with this mesh generation; empty deletes everything owned.",
    ),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig file to use."),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Delete resources owned by a mesh that do not belong to a generation."""
    setup_logging(verbose)
    err = Pruner(connect(kubeconfig, context), namespace).prune(generation)
    if err is not None:
        typer.echo(f"Pruning failed: {err}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Pruned resources owned by {namespace}")


@app.command()
def readiness(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace of the control plane."),
    name: str = typer.Option("basic", "--name", help="Name of the ServiceMeshControlPlane."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator configuration YAML."),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig file to use."),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use."),
) -> None:
    """Print the readiness of every component as JSON."""
    store = connect(kubeconfig, context)
    instance = Document(store.get(CONTROL_PLANE_API_VERSION, CONTROL_PLANE_KIND, namespace, name))
    aggregator = ReadinessAggregator(store, operator_config(config), instance)
    typer.echo(json.dumps(aggregator.component_readiness(), indent=2, sort_keys=True))


@app.command("charts")
def list_charts(
    manifests: Path = typer.Option(..., "--manifests", "-m", help="Directory of rendered charts."),
) -> None:
    """List rendered charts in the order they would be installed."""
    renderings = DirectoryRenderer(manifests)(Document())
    for chart in charts_in_installation_order(renderings):
        typer.echo(f"{chart} ({len(renderings[chart])} manifest(s))")


if __name__ == "__main__":  # pragma: no cover
    app()
