"""FastAPI application entrypoint.

Routers under `homeschool.routers` hold the HTTP controllers; they are
intentionally thin and delegate to services. This module wires them up
together with CORS, request logging, error mapping, a small HTML home
page and the health check.

Endpoint groups (all JSON under /api):
- /api/auth, /api/students, /api/users, /api/admin/users
- /api/classes
- /api/exams, /api/students/assigned-exams
- /api/results
- /api/study-modules
- /api/subscriptions, /api/payments/flutterwave
- /api/lesson-plans, /api/dashboard
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from sqlmodel import Session

from .billing import SubscriptionService
from .config import settings
from .database import create_db_and_tables, engine
from .errors import ServiceError
from .routers import auth, classes, dashboard, exams, lesson_plans, payments, results, study_modules, users

logger = logging.getLogger("homeschool.api")
if not logging.getLogger().handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)


def expire_subscriptions() -> int:
    with Session(engine) as session:
        return SubscriptionService(session).expire_overdue()


@asynccontextmanager
async def lifespan(app: FastAPI):
    expired = expire_subscriptions()
    logger.info("startup_expiry_sweep expired=%d", expired)
    yield


app = FastAPI(title="Homeschool Exams API", lifespan=lifespan)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


def _log_payload(request: Request, started: float, **extra) -> str:
    payload = {
        "request_id": request.state.request_id,
        "path": request.url.path,
        "method": request.method,
        "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
        "client": request.client.host if request.client else "unknown",
    }
    payload.update(extra)
    return json.dumps(payload, ensure_ascii=True)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        if request.url.path.startswith("/api"):
            logger.exception("request_failed %s", _log_payload(request, started))
        raise
    response.headers["X-Request-ID"] = req_id
    if request.url.path.startswith("/api"):
        logger.info("request_done %s", _log_payload(request, started, status_code=response.status_code))
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.extra})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "invalid request", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error request_id=%s", getattr(request.state, "request_id", "-"), exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal server error"})


for _router in (auth, users, classes, exams, results, study_modules, payments, lesson_plans, dashboard):
    app.include_router(_router.router)


HOME_PAGE = """<!doctype html>
<html>
<head><meta charset="utf-8"><title>Homeschool Exams</title></head>
<body>
  <h1>Homeschool Exams</h1>
  <p>Create exams and study modules, assign them to your students and follow their progress.</p>
  <ul>
    <li><a href="/docs">API documentation</a></li>
    <li><a href="/health">Service health</a></li>
  </ul>
</body>
</html>
"""


@app.get("/", response_class=HTMLResponse, include_in_schema=False)
def home():
    return HOME_PAGE


@app.get("/health")
def health():
    return {"status": "ok", "ai_configured": bool(settings.OPENAI_API_KEY)}
