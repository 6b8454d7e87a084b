"""Domain package. Exports models for convenience."""

from . import models  # noqa: F401

__all__ = ["models"]
