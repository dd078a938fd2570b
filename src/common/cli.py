"""Helpers shared by the command line entry points."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from src.common.config import OperatorConfig, load_config

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def operator_config(path: Optional[Path]) -> OperatorConfig:
    """Load the operator configuration, with environment overrides applied."""
    if path is None:
        return OperatorConfig.from_env()
    try:
        return OperatorConfig.from_env(load_config(path))
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Could not load config {path}: {exc}") from exc


__all__ = ["LOG_FORMAT", "operator_config", "setup_logging"]
