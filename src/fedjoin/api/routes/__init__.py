"""
API route modules.
"""

from .health import router as health_router
from .transform import router as transform_router

__all__ = ["health_router", "transform_router"]
