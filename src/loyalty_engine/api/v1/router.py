"""Primary API router definition."""

from fastapi import APIRouter

from . import accounts, vouchers

api_router = APIRouter()

api_router.include_router(accounts.router)
api_router.include_router(vouchers.router)


@api_router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Basic health probe endpoint."""
    return {"status": "ok"}
