import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from .env at repo root (do not override shell env)
load_dotenv(dotenv_path=str(Path(__file__).resolve().parent / ".env"), override=False)

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from utils.errors import AppError, InternalFailure, RateLimited, ValidationFailed
from utils.limiter import limiter
from utils.logger import RequestContextLogMiddleware, setup_logging

setup_logging()

from routers.billing import router as billing_router
from routers.forms import router as forms_router
from routers.health import router as health_router
from routers.submissions import router as submissions_router

logger = logging.getLogger("backend")

app = FastAPI(title="Submitin API")


def _is_production() -> bool:
    return (os.getenv("ENV") or os.getenv("APP_ENV") or "").lower() == "production"


def _safe_message(status_code: int) -> str:
    mapping = {
        400: "Requisição inválida.",
        401: "Não autorizado.",
        403: "Ação não permitida.",
        404: "Não encontrado.",
        405: "Método não permitido.",
        413: "Requisição muito grande.",
        429: "Muitas requisições. Aguarde um momento.",
        500: "Algo deu errado. Tente novamente.",
        503: "Serviço indisponível. Tente novamente.",
    }
    return mapping.get(int(status_code or 500), "Algo deu errado. Tente novamente.")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc, AppError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)
    # Framework-raised errors (unknown route, wrong method): keep status, sanitize message
    if _is_production() or not exc.detail:
        message = _safe_message(exc.status_code)
    else:
        message = str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"path": [str(p) for p in err.get("loc", ()) if p != "body"], "message": err.get("msg")}
        for err in exc.errors()
    ]
    error = ValidationFailed(details=details)
    return JSONResponse(status_code=error.status_code, content=error.to_body())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    error = RateLimited(60)
    return JSONResponse(status_code=error.status_code, content=error.to_body(), headers=error.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalFailure(_safe_message(500))
    return JSONResponse(status_code=error.status_code, content=error.to_body())


app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# CORS: public forms are embedded anywhere; owner endpoints use bearer tokens, not cookies
_raw_origins = os.getenv("CORS_ALLOWED_ORIGINS") or ""
_allow_origins = [o.strip() for o in _raw_origins.split(",") if o.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request/response logging middleware
app.add_middleware(RequestContextLogMiddleware)

app.include_router(health_router)
app.include_router(forms_router)
app.include_router(submissions_router)
app.include_router(billing_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
