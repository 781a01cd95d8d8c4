"""Vault API server package."""

from __future__ import annotations

from .app import APIServerState, VaultAPIServer, create_app

__all__ = ["APIServerState", "VaultAPIServer", "create_app"]
