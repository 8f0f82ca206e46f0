"""API routers."""
from wagerboard.routers import health

__all__ = ["health"]
