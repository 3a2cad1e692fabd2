"""
PhiloGraph API v1 Routers

All plan endpoints under /api/v1/*
"""

from philograph.api.v1 import health, plans

__all__ = ["health", "plans"]
