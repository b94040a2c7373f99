"""
FastAPI application entrypoint.

Run locally:  uvicorn emr_sync.main:app --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from emr_sync.api.routes import router
from emr_sync.config import settings
from emr_sync.models import emr  # noqa: F401  (registers tables on Base.metadata)
from emr_sync.models.database import Base, engine

logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s | %(name)s | %(message)s")

app = FastAPI(
    title="Ward EMR Sync API",
    description=(
        "Pulls patient, admission, vital-sign, lab and prescription data from the "
        "hospital EMR into the ward database: one import at a time, per-admission "
        "transactions, scheduled runs with retry and backoff, hash-chained audit trail."
    ),
    version="1.0.0",
)

app.include_router(router, prefix="/api/v1")


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "INVALID_INPUT", "cause": jsonable_errors(exc)}},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
