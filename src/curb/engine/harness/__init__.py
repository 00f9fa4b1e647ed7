"""Harness adapters for coding-agent CLIs."""

from curb.engine.harness.base import Harness, HarnessCommand, HarnessSpec, InvocationRequest
from curb.engine.harness.cli_backend import CliHarness
from curb.engine.harness.registry import (
    BUILTIN_SPECS,
    FALLBACK_ORDER,
    available_harnesses,
    detect,
    detection_order,
    resolve_specs,
)

__all__ = [
    "BUILTIN_SPECS",
    "FALLBACK_ORDER",
    "CliHarness",
    "Harness",
    "HarnessCommand",
    "HarnessSpec",
    "InvocationRequest",
    "available_harnesses",
    "detect",
    "detection_order",
    "resolve_specs",
]
