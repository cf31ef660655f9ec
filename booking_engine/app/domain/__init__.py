"""Domain package: ORM models and scheduling value objects."""

from . import models, scheduling  # noqa: F401

__all__ = ["models", "scheduling"]
