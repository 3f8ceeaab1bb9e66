"""Router exports for FastAPI composition."""

from . import health, metrics

__all__ = ["health", "metrics"]
