"""Who is visiting: the auth-state variant and the events that change it.

Every component that branches on auth state receives one of
:class:`Anonymous` or :class:`Authenticated`. The backend session travels
inside our own JWT cookie (flask_jwt_extended); :func:`current_identity`
turns that cookie back into a variant.
"""
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from flask import session
from flask_jwt_extended import (create_access_token, get_jwt, get_jwt_identity,
                                set_access_cookies, unset_jwt_cookies, verify_jwt_in_request)
from flask_jwt_extended.exceptions import CSRFError, JWTExtendedException
from jwt.exceptions import PyJWTError

from events import EventStream
from gateway import GatewayError
from utils import setup_logger

logger = setup_logger(__name__)

# Refresh the backend token when it has less than this many seconds left
REFRESH_MARGIN = 60


@dataclass(frozen=True)
class Anonymous:
    is_authenticated = False
    recovery = False


ANONYMOUS = Anonymous()


@dataclass(frozen=True)
class Authenticated:
    id: str
    email: Optional[str] = None
    access_token: str = field(default='', repr=False, compare=False)
    refresh_token: str = field(default='', repr=False, compare=False)
    expires_at: Optional[int] = field(default=None, compare=False)
    # Granted by a password-recovery link; allows update_password
    recovery: bool = False

    is_authenticated = True

    @classmethod
    def from_session(cls, backend_session, recovery=False):
        return cls(
            id=backend_session.user_id,
            email=backend_session.email,
            access_token=backend_session.access_token,
            refresh_token=backend_session.refresh_token,
            expires_at=backend_session.expires_at,
            recovery=recovery,
        )

    def is_stale(self, now=None):
        if not self.expires_at or not self.refresh_token:
            return False
        now = time.time() if now is None else now
        return self.expires_at - now < REFRESH_MARGIN


class AuthEvent(str, Enum):
    SIGNED_IN = 'SIGNED_IN'
    SIGNED_OUT = 'SIGNED_OUT'
    PASSWORD_RECOVERY = 'PASSWORD_RECOVERY'
    USER_UPDATED = 'USER_UPDATED'
    TOKEN_REFRESHED = 'TOKEN_REFRESHED'


class AuthStateStream(EventStream):
    """Auth-state changes, delivered as ``callback(event, identity, visitor)``.

    ``visitor`` is the view-ownership key the visitor had before the change.
    """

    def publish(self, event, identity, visitor=None):
        logger.info(f"auth event {event.value} for {getattr(identity, 'id', 'guest')}")
        super().publish(event, identity, visitor)


def current_identity():
    """Identity carried by the session cookie.

    An invalid or expired cookie reads as Anonymous. A CSRF failure on an
    unsafe method propagates, and flask_jwt_extended answers it with 401.
    """
    try:
        verify_jwt_in_request(optional=True)
    except CSRFError:
        raise
    except (JWTExtendedException, PyJWTError) as exc:
        logger.info(f"ignoring unusable session cookie: {exc}")
        return ANONYMOUS

    claims = get_jwt()
    if not claims:
        return ANONYMOUS
    return Authenticated(
        id=get_jwt_identity(),
        email=claims.get('email'),
        access_token=claims.get('sb_access', ''),
        refresh_token=claims.get('sb_refresh', ''),
        expires_at=claims.get('sb_expires_at'),
        recovery=bool(claims.get('recovery')),
    )


def refresh_identity(gateway, identity):
    """Swap a nearly expired backend token for a fresh one.

    Returns the new identity, or the old one when refreshing fails.
    """
    if not identity.is_authenticated or not identity.is_stale():
        return identity
    try:
        backend_session = gateway.refresh(identity.refresh_token)
    except GatewayError as exc:
        logger.warning(f"token refresh failed for {identity.id}: {exc}")
        return identity
    return Authenticated.from_session(backend_session, recovery=identity.recovery)


def set_session_cookies(response, identity):
    token = create_access_token(identity=identity.id, additional_claims={
        'email': identity.email,
        'sb_access': identity.access_token,
        'sb_refresh': identity.refresh_token,
        'sb_expires_at': identity.expires_at,
        'recovery': identity.recovery,
    })
    set_access_cookies(response, token)
    return response


def clear_session_cookies(response):
    unset_jwt_cookies(response)
    return response


def visitor_key(identity):
    """Key that owns a visitor's view instances.

    Signed-in visitors are keyed by user id; guests get a random key kept in
    the signed Flask session cookie.
    """
    if identity.is_authenticated:
        return identity.id
    key = session.get('visitor')
    if key is None:
        key = session['visitor'] = f"guest-{uuid.uuid4().hex}"
    return key
