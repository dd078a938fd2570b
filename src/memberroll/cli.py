from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from src.common.cli import operator_config, setup_logging
from src.common.events import StoreEventRecorder
from src.common.metadata import MEMBER_ROLL_NAME
from src.kube.dynamic import connect
from src.memberroll.networking import select_networking_strategy
from src.memberroll.reconciler import MemberRollReconciler

app = typer.Typer(help="Reconcile service mesh member rolls.")


@app.command()
def reconcile(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace of the mesh."),
    name: str = typer.Option(MEMBER_ROLL_NAME, "--name", help="Name of the ServiceMeshMemberRoll."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator configuration YAML."),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig file to use."),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a single reconcile pass for one member roll."""
    setup_logging(verbose)
    store = connect(kubeconfig, context)
    reconciler = MemberRollReconciler(store, operator_config(config), events=StoreEventRecorder(store))
    result = reconciler.reconcile(namespace, name)
    if result.requeue:
        typer.echo(f"Reconcile of {namespace}/{name} incomplete, retry in {result.requeue_after:.0f}s")
    else:
        typer.echo(f"Reconciled {namespace}/{name}")


@app.command()
def strategy(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace of the mesh."),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Operator configuration YAML."),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Kubeconfig file to use."),
    context: Optional[str] = typer.Option(None, "--context", help="Kubeconfig context to use."),
) -> None:
    """Print the networking strategy the cluster's network provider selects."""
    selected = select_networking_strategy(connect(kubeconfig, context), namespace, operator_config(config))
    typer.echo(selected.name)


if __name__ == "__main__":  # pragma: no cover
    app()
