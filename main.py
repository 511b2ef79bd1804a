import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auth import router as auth_router
from config import CORS_ORIGINS, LOG_LEVEL, PORT
from database import ensure_indexes, get_db
from donations import router as donations_router
from errors import install_error_handlers
from food_requests import router as requests_router
from stats import platform_stats
from utils import success, utcnow

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("sharebutes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except Exception as e:
            logger.warning("Index creation error: %s", str(e)[:80])
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; API will answer 500 on data routes")
    yield


app = FastAPI(title="ShareButes API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(donations_router, prefix="/api/donations", tags=["donations"])
app.include_router(requests_router, prefix="/api/requests", tags=["requests"])


@app.get("/")
def read_root():
    return {"name": "ShareButes API", "status": "ok"}


@app.get("/api/health")
def health():
    return {
        "status": "OK",
        "message": "ShareButes API is running",
        "timestamp": utcnow().isoformat() + "Z",
    }


@app.get("/api/stats")
def get_platform_stats(db: Database = Depends(get_db)):
    return success(platform_stats(db))


@app.get("/test")
def database_diagnostics():
    """Report whether the configured database answers and which collections it holds."""
    report = {
        "backend": "running",
        "database": "not configured",
        "databaseName": None,
        "collections": [],
    }
    db = database.db
    if db is None:
        return report
    report["databaseName"] = db.name
    try:
        report["collections"] = sorted(db.list_collection_names())[:10]
        report["database"] = "connected"
    except PyMongoError as e:
        logger.warning("Database diagnostics failed: %s", str(e)[:80])
        report["database"] = f"error: {str(e)[:80]}"
    return report


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
