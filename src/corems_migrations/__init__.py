"""Discovery and execution of Flyway migrations across installed CoreMS services."""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
