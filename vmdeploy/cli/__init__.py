"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import DeployModalCLI, main

__all__ = ['DeployModalCLI', 'main']
