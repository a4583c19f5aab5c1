"""Shared dependency context for API route registration."""

from __future__ import annotations

from dataclasses import dataclass

from ..orchestrator.service import IterationService
from ..storage.store import IterationStore


@dataclass(frozen=True)
class RouteDeps:
    """Route registration dependency bundle."""

    store: IterationStore
    service: IterationService
