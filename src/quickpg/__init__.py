"""quickpg package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the package version from here (see ``pyproject.toml``).
__version__ = "0.1.0"
