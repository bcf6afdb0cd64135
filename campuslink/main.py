import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from .routes import router
from .config import LOG_LEVEL, MEDIA_DIR, STORAGE_BACKEND
from .core import redis_startup, shutdown_connections, init_metrics
from .exceptions import register_exception_handlers
from .realtime import hub
import logging
from pythonjsonlogger import jsonlogger

# setup structured logging
logger = logging.getLogger('campuslink')
handler = logging.StreamHandler()
formatter = jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(LOG_LEVEL)

app = FastAPI(title="CampusLink API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

register_exception_handlers(app)
app.include_router(router, prefix="/api")

if STORAGE_BACKEND != 's3':
    os.makedirs(MEDIA_DIR, exist_ok=True)
    app.mount('/media', StaticFiles(directory=MEDIA_DIR), name='media')

@app.get('/healthz')
async def healthz():
    return {'status': 'ok'}

@app.middleware('http')
async def log_requests(request: Request, call_next):
    logger.info({'msg':'request_start','method':request.method,'path':request.url.path})
    response = await call_next(request)
    logger.info({'msg':'request_end','status': response.status_code})
    return response

@app.on_event("startup")
async def startup():
    # Best-effort init, don't block app from starting if a dependency fails
    await redis_startup()
    await hub.start_listener()
    init_metrics()

@app.on_event("shutdown")
async def shutdown():
    await hub.stop_listener()
    await hub.stop_dispatcher()
    await shutdown_connections()
