"""Application package.

Importing it loads the database helpers and the ORM models so the metadata is
complete before any engine or migration touches it.
"""

from .core import db
from .domain import models

__all__ = ["db", "models"]
