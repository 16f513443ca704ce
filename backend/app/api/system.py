import asyncio

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from app.db import postgres
from app.models.system import HealthResponse, ModelOut
from app.core.security import get_current_user
from app.api.chat import get_services
from app.core.pipeline import ChatServices

VERSION = "0.1.0"

router = APIRouter(prefix="/api/system", tags=["system"])


async def check_postgres() -> bool:
    try:
        row = await postgres.fetch_one("SELECT 1")
        return row is not None
    except Exception as e:
        logger.warning("[system] postgres check failed: {}", e)
        return False


@router.get("/health", response_model=HealthResponse)
async def health(services: ChatServices = Depends(get_services)):
    postgres_ok, zep_ok, provider_ok = await asyncio.gather(
        check_postgres(),
        services.memory.zep.ping(),
        services.provider.ping(),
    )

    overall_status = all([postgres_ok, zep_ok, provider_ok])

    return {
        "status": "ok" if overall_status else "degraded",
        "version": VERSION,
        "dependencies": {
            "postgres": "connected" if postgres_ok else "error",
            "zep": "connected" if zep_ok else "error",
            "provider": "connected" if provider_ok else "error",
        },
    }


@router.get("/models", response_model=list[ModelOut])
async def list_models(
    current_user: dict = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
) -> list[ModelOut]:
    registry = services.registry
    return [
        ModelOut(
            model=r.model,
            input_per_mtok=r.input_per_mtok,
            output_per_mtok=r.output_per_mtok,
            cached_input_per_mtok=r.cached_input_per_mtok,
            is_default=r.model == registry.default_model,
        )
        for r in await registry.all_models()
    ]


@router.post("/pricing/invalidate")
async def invalidate_pricing(
    current_user: dict = Depends(get_current_user),
    services: ChatServices = Depends(get_services),
):
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    await services.registry.invalidate()
    models = await services.registry.all_models()
    logger.info("[system] pricing cache invalidated by {}, {} models loaded", current_user["id"], len(models))
    return {"status": "ok", "models": len(models)}
