"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from admin_core.app.api.v1.endpoints import admin, audit, security, analytics

router = APIRouter()

# User management
router.include_router(admin.router)

# Audit trail
router.include_router(audit.router)

# Security events
router.include_router(security.router)

# Analytics
router.include_router(analytics.router)
