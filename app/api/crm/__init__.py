from fastapi import APIRouter

from app.api.crm.imports import router as imports_router

router = APIRouter(tags=["crm"])
router.include_router(imports_router)

__all__ = ["router"]
