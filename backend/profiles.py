import threading
import time

from gateway import GatewayError
from identity import AuthEvent
from models import Profile
from utils import setup_logger

logger = setup_logger(__name__)

# The profile row can lag behind verification; wait once before giving up
PROFILE_RETRY_DELAY = 0.8


class ProfileNotFound(Exception):
    pass


def default_username(backend_session):
    username = (backend_session.metadata or {}).get('username')
    if username:
        return username
    if backend_session.email:
        return backend_session.email.split('@')[0]
    return 'user'


def ensure_profile(gateway, backend_session):
    """Create the profile row on first verified sign-in if it is missing."""
    token = backend_session.access_token
    existing = gateway.get_profile(token, backend_session.user_id)
    if existing is not None:
        return existing
    profile = Profile(id=backend_session.user_id,
                      username=default_username(backend_session),
                      email=backend_session.email,
                      total_xp=0)
    gateway.insert_profile(token, profile)
    logger.info(f"created profile {profile.id} ({profile.username})")
    return profile


def load_profile(gateway, identity, sleep=time.sleep, delay=PROFILE_RETRY_DELAY):
    profile = gateway.get_profile(identity.access_token, identity.id)
    if profile is None:
        sleep(delay)
        profile = gateway.get_profile(identity.access_token, identity.id)
    if profile is None:
        raise ProfileNotFound(identity.id)
    return profile


def focus_stats(gateway, identity):
    sessions = gateway.list_focus_sessions(identity.access_token, identity.id)
    return {
        'sessions': len(sessions),
        'minutes': sum(s.minutes for s in sessions),
        'xp_earned': sum(s.xp_earned for s in sessions),
    }


def xp_drift(profile, stats):
    """XP logged in focus sessions minus the profile total (0 when consistent)."""
    return stats['xp_earned'] - profile.total_xp


def initials(username):
    return ''.join(part[0] for part in (username or '').split() if part).upper()[:2]


def display_name(username, email):
    if username:
        return username
    return email.split('@')[0] if email else ''


class DisplayNames:
    """Navigation display names per user, refreshed on every auth event."""

    def __init__(self, gateway, auth_stream):
        self.gateway = gateway
        self._names = {}
        self._lock = threading.Lock()
        self._subscription = auth_stream.subscribe(self._on_auth)

    def _on_auth(self, event, identity, visitor):
        if event == AuthEvent.SIGNED_OUT:
            with self._lock:
                self._names.pop(identity.id, None)
        elif identity.is_authenticated:
            self._load(identity)

    def _load(self, identity):
        try:
            profile = self.gateway.get_profile(identity.access_token, identity.id)
        except GatewayError as exc:
            logger.error(f"Username load error: {exc}")
            profile = None
        name = display_name(profile.username if profile else None, identity.email)
        with self._lock:
            self._names[identity.id] = name
        return name

    def get(self, identity):
        if not identity.is_authenticated:
            return ''
        with self._lock:
            name = self._names.get(identity.id)
        if name is None:
            name = self._load(identity)
        return name

    def close(self):
        self._subscription.unsubscribe()
