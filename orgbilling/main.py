import logging
import math
import os
from datetime import datetime, timedelta
from typing import Optional

import psycopg2
import psycopg2.extras
from dotenv import load_dotenv
from fastapi import Cookie, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from pydantic import BaseModel

from orgbilling import app_context
from orgbilling.app.routes.billing import router as billing_router
from orgbilling.app.routes.billing import webhook_router as billing_webhook_router
from orgbilling.grace_sweep import shutdown_grace_sweep_scheduler, start_grace_sweep_scheduler

load_dotenv()


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "orgbilling"),
    user=os.getenv("DB_USER", "billing_user"),
    password=os.getenv("DB_PASSWORD", "billing_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXP_MINUTES = int(os.getenv("JWT_EXP_MINUTES", str(60 * 24 * 7)))  # default: 7 days
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logger = logging.getLogger("billing")


class CurrentUser(BaseModel):
    id: str
    organization_id: str
    role: str


def get_conn():
    return psycopg2.connect(**DB_CFG)


def create_access_token(*, subject: str, expires_delta: Optional[timedelta] = None) -> str:
    payload = {"sub": subject}
    if expires_delta is None:
        expires_delta = timedelta(minutes=JWT_EXP_MINUTES)
    expire = datetime.utcnow() + expires_delta
    payload["exp"] = expire
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def get_member_by_user_id(user_id: str) -> Optional[CurrentUser]:
    with get_conn() as conn, conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        cur.execute(
            """
            SELECT user_id, organization_id, role
            FROM organization_members
            WHERE user_id = %s AND status = 'active'
            """,
            (user_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return CurrentUser(id=row["user_id"], organization_id=row["organization_id"], role=row["role"])


def resolve_user_from_session_token(session_token: str) -> Optional[CurrentUser]:
    try:
        payload = jwt.decode(session_token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    return get_member_by_user_id(str(subject))


def get_current_user(session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME)) -> CurrentUser:
    if not session_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = resolve_user_from_session_token(session_token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


app = FastAPI(title="Organization Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)
app.include_router(billing_webhook_router)

app_context.configure(
    get_conn=get_conn,
    get_current_user=get_current_user,
)


@app.on_event("startup")
def start_background_jobs() -> None:
    start_grace_sweep_scheduler()


@app.on_event("shutdown")
def stop_background_jobs() -> None:
    shutdown_grace_sweep_scheduler()


@app.get("/health")
def health():
    return {"status": "ok"}

# run: uvicorn orgbilling.main:app --host 127.0.0.1 --port 8000 --reload
