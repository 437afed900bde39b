from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from gfs_data import build_services

SERVER_PORT = int(os.getenv("SERVER_PORT", "3333"))
REFRESH_ENABLED = os.getenv("GFS_REFRESH_ENABLED", "1").strip() == "1"


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", os.getenv("GFS_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("gfs_server")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("GFS_LOG_FILE", "logs/gfs_server.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()

cache, pipeline, scheduler, query_service = build_services()


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    LOGGER.info("App startup")
    if REFRESH_ENABLED:
        scheduler.start()
    else:
        LOGGER.info("Background refresh disabled by GFS_REFRESH_ENABLED")
    try:
        yield
    finally:
        LOGGER.info("App shutdown")
        scheduler.stop()


app = FastAPI(title="GFS Wind Data Server", lifespan=_lifespan)


def _allowed_cors_origins() -> List[str]:
    # read-only public data, any origin unless restricted
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*").strip()
    return [v.strip() for v in raw.split(",") if v.strip()] or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.get("/data", response_model=None)
def data(isoTimestamp: str | None = Query(None)) -> Response:
    try:
        cycle, raw = query_service.query_nearest_bytes(isoTimestamp)
    except ValueError as exc:
        LOGGER.warning("Data request invalid: %s", exc)
        return _error(400, str(exc))
    except LookupError as exc:
        LOGGER.debug("Data cache miss isoTimestamp=%s", isoTimestamp)
        return _error(404, str(exc))
    # splice the stored document in as-is instead of re-encoding it
    body = b"{\"data\":" + raw + b",\"timestamp\":\"" + cycle.timestamp.encode() + b"\"}"
    return Response(content=body, media_type="application/json")


@app.get("/timestamp", response_model=None)
def timestamp(isoTimestamp: str | None = Query(None)) -> Dict[str, object] | JSONResponse:
    try:
        cycle = query_service.query_timestamp(isoTimestamp)
    except ValueError as exc:
        LOGGER.warning("Timestamp request invalid: %s", exc)
        return _error(400, str(exc))
    except LookupError as exc:
        return _error(404, str(exc))
    return {"timestamp": cycle.timestamp}


@app.get("/cycles")
def cycles() -> Dict[str, object]:
    last = scheduler.last_refreshed_at
    return {
        "timestamps": [c.timestamp for c in sorted(cache.list_cycles(), reverse=True)],
        "inflight": [c.timestamp for c in pipeline.inflight_cycles()],
        "scheduler_running": scheduler.running,
        "last_refreshed_at": last.isoformat() if last else None,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=SERVER_PORT)
