import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import engine, Base
from . import models  # registers tables on Base
from .exceptions import ClaimsError, Forbidden, Ineligible, NotFound, PreconditionFailed
from .routes import admin, claims, metrics, premiums, upload

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="Creator Content Insurance API")

# CORS configuration
origins = [
    "http://localhost:5173",
    "http://localhost:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_ERROR = {
    NotFound: 404,
    Forbidden: 403,
    PreconditionFailed: 409,
    Ineligible: 400,
}


@app.exception_handler(ClaimsError)
async def claims_error_handler(request: Request, exc: ClaimsError):
    status = next((code for cls, code in STATUS_BY_ERROR.items() if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "error": "validation_error",
                                                  "detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]


# Create tables on startup; a no-op for tables that already exist
@app.on_event("startup")
def create_database_tables():
    Base.metadata.create_all(bind=engine)


# Routers
app.include_router(claims.router, prefix="/api", tags=["Claims"])
app.include_router(premiums.router, prefix="/api", tags=["Premiums"])
app.include_router(upload.router, prefix="/api", tags=["Upload"])
app.include_router(metrics.router, prefix="/api", tags=["Metrics"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
def root():
    return {"message": "Creator Content Insurance API is running!"}
