"""
Health check route (no authentication).
"""

from fastapi import APIRouter

from tradersutopia import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok", "version": __version__}
