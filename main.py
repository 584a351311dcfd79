import logging
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import db, ensure_indexes
from errors import ShopError
from routers import all_routers

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(db)
    except PyMongoError as e:
        logger.error("Could not ensure MongoDB indexes: %s", e)
    yield


app = FastAPI(title="SPARK Store API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        # Rendered here so the 500 still carries the request id
        response = await global_exception_handler(request, exc)
    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "%s %s -> %d (%.1f ms) [%s]",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request_id,
    )
    return response


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.extra})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning("Duplicate key on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "A record with this value already exists"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    detail = "An unexpected error occurred. Please try again later." if config.ENVIRONMENT == "production" else str(exc)
    return JSONResponse(status_code=500, content={"detail": detail})


for router in all_routers:
    app.include_router(router, prefix="/api")

os.makedirs(config.UPLOAD_PATH, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=config.UPLOAD_PATH, check_dir=False), name="uploads")


# Routes
@app.get("/")
def read_root():
    return {"message": "SPARK Store API"}


@app.get("/api/health")
def health():
    return {"status": "ok", "environment": config.ENVIRONMENT, "version": app.version}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_url"] = "✅ Set"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "❌ Not Available"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
