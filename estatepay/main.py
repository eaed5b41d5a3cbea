import logging
import os
from datetime import timedelta
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from estatepay import app_context
from estatepay.app.auth import TokenVerifier, parse_bearer
from estatepay.app.auth import create_access_token as _encode_access_token
from estatepay.app.payments import Actor, PaymentsError, Unauthorized, UserRole
from estatepay.app.payments.config import load_auth_config, load_database_config
from estatepay.app.routes.payments import payments_router, subscriptions_router, webhooks_router

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("estatepay")

DB_CONFIG = load_database_config()
AUTH_CONFIG = load_auth_config()
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

token_verifier = TokenVerifier(AUTH_CONFIG.secret_key, AUTH_CONFIG.algorithm)


def get_conn():
    return psycopg2.connect(**DB_CONFIG.as_connect_kwargs())


def create_access_token(*, user_id: str, role: UserRole) -> str:
    return _encode_access_token(
        user_id=user_id,
        role=role,
        secret_key=AUTH_CONFIG.secret_key,
        algorithm=AUTH_CONFIG.algorithm,
        expires_delta=timedelta(minutes=AUTH_CONFIG.token_ttl_minutes),
    )


def get_current_actor(authorization: Optional[str] = None) -> Actor:
    actor = token_verifier.verify(parse_bearer(authorization))
    if actor is None:
        raise Unauthorized()
    return actor


app = FastAPI(title="Estatepay Payments API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PaymentsError)
async def handle_payments_error(request: Request, exc: PaymentsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "%s %s failed: %s",
            request.method,
            request.url.path,
            exc.detail or exc.message,
            extra={"payment_error_code": exc.code},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(status_code=exc.status_code, content={"error": message}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": message})


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


app.include_router(payments_router)
app.include_router(subscriptions_router)
app.include_router(webhooks_router)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app_context.configure(
    get_conn=get_conn,
    get_current_actor=get_current_actor,
)
