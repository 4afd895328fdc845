"""
Firebase Authentication

Verifies Firebase ID tokens. The uid of the signed-in account scopes the
remote snapshot store, so every device signed in to one account syncs
against the same data. Demo mode accepts an X-Demo-User-Id header instead.
"""

from dataclasses import dataclass
from typing import Optional

import firebase_admin
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth

from mabourse.core.config import get_settings
from mabourse.core.logging import get_logger

logger = get_logger("mabourse.auth")

# HTTP Bearer scheme for Authorization header
security = HTTPBearer(auto_error=False)

DEMO_USER_PREFIX = "demo_"


def _ensure_firebase_initialized():
    """Lazy Firebase initialization - only when a token actually needs verifying."""
    if not firebase_admin._apps:
        firebase_admin.initialize_app()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


@dataclass
class FirebaseUser:
    """The account a request acts for."""

    uid: str
    email: Optional[str] = None
    is_demo: bool = False

    @classmethod
    def from_token(cls, decoded_token: dict) -> "FirebaseUser":
        return cls(uid=decoded_token["uid"], email=decoded_token.get("email"))

    @classmethod
    def demo_user(cls, demo_id: str) -> "FirebaseUser":
        return cls(
            uid=f"{DEMO_USER_PREFIX}{demo_id}",
            email=f"{demo_id}@demo.mabourse.local",
            is_demo=True,
        )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_demo_user_id: Optional[str] = Header(None, alias="X-Demo-User-Id"),
) -> FirebaseUser:
    """
    Dependency that verifies the Firebase ID token and returns the account.

    Demo mode:
        Send header: X-Demo-User-Id: my-demo-session
        Returns demo user with uid: demo_my-demo-session
    """
    if get_settings().demo_mode and x_demo_user_id:
        return FirebaseUser.demo_user(x_demo_user_id)

    if credentials is None:
        raise _unauthorized("Missing authentication token")

    try:
        _ensure_firebase_initialized()
        decoded_token = auth.verify_id_token(credentials.credentials)
    except auth.ExpiredIdTokenError:
        raise _unauthorized("Authentication token has expired")
    except auth.InvalidIdTokenError:
        raise _unauthorized("Invalid authentication token")
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise _unauthorized(f"Authentication failed: {str(e)}")

    return FirebaseUser.from_token(decoded_token)
