from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from enrollpay.core.config import settings
from enrollpay.core.errors import EnrollmentError
from enrollpay.api import admin, enrollments, webhooks

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Enrollment Payments API", version="1.0.0")

ALLOWED_ORIGINS = settings.get_allowed_origins()

# CORS headers are also added on unhandled errors (see global_exception_handler)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and origin in ALLOWED_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "*"
        response.headers["Access-Control-Allow-Headers"] = "*"
    return response


@app.exception_handler(EnrollmentError)
async def enrollment_error_handler(request: Request, exc: EnrollmentError):
    """Domain errors carry their own status and a message safe to show the patient."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
    return _with_cors(request, JSONResponse(status_code=exc.status_code, content={"error": exc.message}))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Ensure CORS headers are included even on unhandled exceptions"""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _with_cors(request, JSONResponse(status_code=500, content={"error": "Internal server error"}))


app.include_router(enrollments.router, prefix="/enrollments", tags=["enrollments"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


@app.get("/")
async def root():
    return {"message": "Enrollment Payments API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
