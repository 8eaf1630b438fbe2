import os
import logging
from typing import Optional

import jwt
from dotenv import load_dotenv
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from chatflow.chat.session import ChatSession, SessionRegistry
from chatflow.chat.store import RemoteStore
from chatflow.core.errors import NotAuthenticatedError

load_dotenv()
logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
JWT_SIGN_KEY = os.getenv("SUPABASE_JWT_SECRET")
JWT_ISSUER = f"{os.getenv('PUBLIC_SUPABASE_URL')}/auth/v1"


def decode_token(token: Optional[str]) -> dict:
    """Validate a Supabase access token and return its claims."""
    if not token:
        raise NotAuthenticatedError()

    try:
        payload = jwt.decode(
            token,
            JWT_SIGN_KEY,
            algorithms=["HS256"],
            issuer=JWT_ISSUER,
            options={"verify_aud": False},
            leeway=60,
        )
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"jwt_verification_failed error={e}")
        raise NotAuthenticatedError("Invalid token")

    if not payload.get("sub"):
        raise NotAuthenticatedError("Token has no subject")
    return payload


def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    try:
        return decode_token(credentials.credentials if credentials else None)
    except NotAuthenticatedError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_viewer_id(user=Depends(verify_token)) -> str:
    return str(user["sub"])


def get_store(request: Request) -> RemoteStore:
    return request.app.state.store


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_session(
    viewer_id: str = Depends(get_viewer_id),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ChatSession:
    return await sessions.get(viewer_id)
