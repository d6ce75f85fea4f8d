"""
Utility endpoints
"""
from fastapi import APIRouter

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
async def health_check() -> bool:
    """
    Liveness check: GET /api/v1/utils/health-check/
    """
    return True
