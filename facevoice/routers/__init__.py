"""
FastAPI routers for the facevoice service.
"""

from facevoice.routers import health, speakers, tracking

__all__ = ["health", "tracking", "speakers"]
