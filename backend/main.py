import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🔥 Campfire Tales backend starting up (storage=%s)...", settings.storage_backend)
    yield
    from services.wakeup_scheduler import wakeup_scheduler
    wakeup_scheduler.cancel_all()
    logger.info("Backend shutting down.")


app = FastAPI(
    title="Campfire Tales",
    version="0.1.0",
    description="Collaborative storytelling rooms: vote on the next move, an LLM narrates the rest",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "campfire-tales", "version": "0.1.0"}


from routers.room_router import router as room_router
from routers.ws_router import router as ws_router

app.include_router(room_router, prefix="/api")
app.include_router(ws_router)


# Serve the static client when it is deployed next to the backend
_public_dir = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "public")
)
if os.path.isdir(_public_dir):
    app.mount("/", StaticFiles(directory=_public_dir, html=True), name="static")
    logger.info(f"Serving frontend from {_public_dir}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
