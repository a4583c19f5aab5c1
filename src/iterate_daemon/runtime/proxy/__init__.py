"""Reverse proxy to iteration preview servers."""

from .router import ProxyRouter, register_proxy_routes

__all__ = ["ProxyRouter", "register_proxy_routes"]
