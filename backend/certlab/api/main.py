"""
API router aggregation

- subscription: status, plans, checkout, lifecycle operations, webhook
- utils: health check
"""
from fastapi import APIRouter

from certlab.api.routes import subscription, utils

api_router = APIRouter()
api_router.include_router(subscription.router)  # /subscription/*
api_router.include_router(utils.router)  # /utils/*
