from fastapi import APIRouter

from app.api.admin.category_mappings import router as category_mappings_router
from app.api.admin.changes import router as changes_router
from app.api.admin.sync import router as sync_router

router = APIRouter()
router.include_router(sync_router)
router.include_router(changes_router)
router.include_router(category_mappings_router)
