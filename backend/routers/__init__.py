"""
API Routers package
"""
from .traces import router as traces_router

__all__ = [
    "traces_router",
]
