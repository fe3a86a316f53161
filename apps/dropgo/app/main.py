import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from dropgo_shared import RequestIDMiddleware, add_standard_health, configure_cors, setup_json_logging

from . import db, realtime
from .accounts import router as accounts_router
from .admin import router as admin_router
from .chat import router as chat_router
from .fares import router as fares_router
from .presence import router as presence_router
from .ratings import router as ratings_router
from .rides import router as rides_router
from .settings import ALLOWED_ORIGINS, MEDIA_BASE_URL, MEDIA_ROOT

logger = logging.getLogger("dropgo")


@asynccontextmanager
async def _lifespan(app: FastAPI):
    db.init_db()
    realtime.bind_loop(asyncio.get_running_loop())
    task = asyncio.create_task(realtime.drain_queue_forever())
    logger.info("dropgo started")
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        realtime.unbind_loop()


app = FastAPI(title="DropGo API", version="0.1.0", lifespan=_lifespan)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, ALLOWED_ORIGINS)
add_standard_health(app, probe=lambda: db.ping())

os.makedirs(MEDIA_ROOT, exist_ok=True)
# MEDIA_BASE_URL may point at a CDN; we still serve the files locally.
_media_path = MEDIA_BASE_URL.rstrip("/") if MEDIA_BASE_URL.startswith("/") else "/media"
app.mount(_media_path or "/media", StaticFiles(directory=MEDIA_ROOT), name="media")

app.include_router(accounts_router)
app.include_router(presence_router)
app.include_router(rides_router)
app.include_router(chat_router)
app.include_router(ratings_router)
app.include_router(fares_router)
app.include_router(admin_router)
app.include_router(realtime.router_ws)
