"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from plan_ledger.app.api.v1.endpoints import cron, admin_payment_plans, admin_ops

router = APIRouter()

# Scheduled job triggers
router.include_router(cron.router)

# Operator endpoints
router.include_router(admin_payment_plans.router)
router.include_router(admin_ops.router)
