import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request, Response

from config import (
    DEFAULT_ADMIN_PASSWORD,
    DEFAULT_ADMIN_USERNAME,
    SESSION_COOKIE_NAME,
    SESSION_MAX_AGE_SECONDS,
    Settings,
)
from errors import AuthError, DuplicateError
from schemas import AdminCreate, Session, utcnow
from storage import Storage

logger = logging.getLogger(__name__)

JWT_ALGO = "HS256"
HASH_SCHEME = "pbkdf2_sha256"
HASH_ITERATIONS = 100000


# ----------------------- Passwords -----------------------

def hash_password(password: str, salt: Optional[str] = None, iterations: int = HASH_ITERATIONS) -> str:
    if salt is None:
        salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations
    ).hex()
    return f"{HASH_SCHEME}${iterations}${salt}${digest}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        scheme, iterations, salt, digest = hashed.split("$")
        iterations = int(iterations)
    except ValueError:
        return False
    if scheme != HASH_SCHEME:
        return False
    candidate = hash_password(password, salt, iterations).rsplit("$", 1)[1]
    return hmac.compare_digest(candidate, digest)


# checked against when the username is unknown, so both failures cost one hash
DUMMY_HASH = hash_password(secrets.token_hex(16))


# ----------------------- Session cookie -----------------------

def create_token(session: Session, secret: str) -> str:
    payload = {"sid": session.id, "exp": session.expires_at}
    return jwt.encode(payload, secret, algorithm=JWT_ALGO)


def decode_token(token: str, secret: str) -> Optional[str]:
    """Session id carried by a cookie token, or None if it is forged or expired."""
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGO])
    except jwt.InvalidTokenError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) else None


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def session_id_from(request: Request, settings: Settings) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    return decode_token(token, settings.session_secret)


async def current_session(request: Request, storage: Storage, settings: Settings) -> Optional[Session]:
    sid = session_id_from(request, settings)
    if sid is None:
        return None
    session = await storage.get_session(sid)
    if session is None:
        return None
    if session.expires_at <= utcnow():
        await storage.delete_session(sid)
        return None
    return session


async def start_session(storage: Storage, settings: Settings, response: Response,
                        admin_id: str, previous: Optional[str] = None) -> Session:
    if previous:
        await storage.delete_session(previous)
    await storage.delete_expired_sessions(utcnow())
    expires_at = utcnow() + timedelta(seconds=SESSION_MAX_AGE_SECONDS)
    session = await storage.create_session(admin_id, expires_at)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        create_token(session, settings.session_secret),
        max_age=SESSION_MAX_AGE_SECONDS,
        httponly=True,
        secure=settings.production,
        samesite=settings.cookie_samesite,
    )
    return session


async def end_session(request: Request, storage: Storage, settings: Settings, response: Response) -> None:
    sid = session_id_from(request, settings)
    if sid is not None:
        await storage.delete_session(sid)
    response.delete_cookie(
        SESSION_COOKIE_NAME,
        httponly=True,
        secure=settings.production,
        samesite=settings.cookie_samesite,
    )


async def require_admin(
    request: Request,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
) -> str:
    session = await current_session(request, storage, settings)
    if session is None:
        raise AuthError("Authentication required")
    return session.admin_id


# ----------------------- Bootstrap -----------------------

async def ensure_default_admin(storage: Storage) -> bool:
    """Create the seed admin if it is missing. Returns True if it was created."""
    if await storage.get_admin_by_username(DEFAULT_ADMIN_USERNAME) is not None:
        return False
    try:
        await storage.create_admin(
            AdminCreate(username=DEFAULT_ADMIN_USERNAME, password=hash_password(DEFAULT_ADMIN_PASSWORD))
        )
    except DuplicateError:
        # another worker got there first
        return False
    logger.info("Created default admin %r", DEFAULT_ADMIN_USERNAME)
    return True
