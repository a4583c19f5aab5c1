"""HTTP control API for the daemon."""

from .deps import RouteDeps
from .router import create_router

__all__ = ["RouteDeps", "create_router"]
