"""deskhost package namespace."""

from __future__ import annotations

__all__: list[str] = ["__version__"]

# Bumped by the release tooling.
__version__ = "1.0.0"
