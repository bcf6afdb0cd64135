from fastapi import APIRouter
from .profiles import router as profiles_router
from .friends import router as friends_router
from .messages import router as messages_router
from .ws import router as ws_router

router = APIRouter()
router.include_router(profiles_router, prefix='/profiles', tags=['profiles'])
router.include_router(friends_router, prefix='/friends', tags=['friends'])
router.include_router(messages_router, prefix='/messages', tags=['messages'])
router.include_router(ws_router, prefix='/ws', tags=['ws'])
