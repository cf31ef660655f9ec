"""Application package.

Explicit initializer for `booking_engine.app`: the engine's persistence
layer and its models.
"""

from .core import db
from .domain import models

__all__ = ["db", "models"]
