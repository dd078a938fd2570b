"""Chart ordering and pre-rendered manifest loading.

Rendering charts into manifests is done by an external template engine. The
reconciler receives ``{chart_name: [(manifest_name, yaml_text), ...]}`` and
only decides the order in which charts are applied.
"""

from __future__ import annotations

import posixpath
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Sequence

from src.common.document import Document
from src.manifests.processor import MANIFEST_SUFFIXES, Manifest

Renderings = Mapping[str, Sequence[Manifest]]
Renderer = Callable[[Document], Renderings]

ORDERED_CHARTS = (
    "istio",
    "istio/charts/security",
    "istio/charts/prometheus",
    "istio/charts/tracing",
    "istio/charts/galley",
    "istio/charts/mixer",
    "istio/charts/pilot",
    "istio/charts/gateways",
    "istio/charts/sidecarInjectorWebhook",
    "istio/charts/grafana",
    "istio/charts/kiali",
)


def charts_in_installation_order(charts: Iterable[str], ordered: Sequence[str] = ORDERED_CHARTS) -> List[str]:
    """Known charts first, then other ``istio/`` charts, then everything else."""
    available = set(charts)
    result = [chart for chart in ordered if chart in available]
    seen = set(result)
    remaining = sorted(available - seen)
    result.extend(chart for chart in remaining if chart.startswith("istio/"))
    result.extend(chart for chart in remaining if not chart.startswith("istio/"))
    return result


def component_from_chart(chart: str) -> str:
    return posixpath.basename(chart.rstrip("/"))


class DirectoryRenderer:
    """Serves manifests rendered ahead of time into a directory tree.

    Every directory holding YAML files is a chart named by its path relative
    to ``root``, e.g. ``root/istio/charts/pilot/deployment.yaml`` belongs to
    chart ``istio/charts/pilot``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def __call__(self, instance: Document) -> Dict[str, List[Manifest]]:
        if not self.root.is_dir():
            raise FileNotFoundError(f"manifest directory not found: {self.root}")
        renderings: Dict[str, List[Manifest]] = {}
        for path in sorted(self.root.rglob("*")):
            if not path.is_file() or path.suffix not in MANIFEST_SUFFIXES:
                continue
            chart = path.parent.relative_to(self.root).as_posix()
            if chart == ".":
                continue
            renderings.setdefault(chart, []).append(
                (path.relative_to(self.root).as_posix(), path.read_text(encoding="utf-8"))
            )
        return renderings


__all__ = [
    "DirectoryRenderer",
    "ORDERED_CHARTS",
    "Renderer",
    "Renderings",
    "charts_in_installation_order",
    "component_from_chart",
]
