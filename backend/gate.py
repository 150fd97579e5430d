from flask import current_app, g, redirect, request

from identity import current_identity, refresh_identity, set_session_cookies, AuthEvent
from utils import setup_logger

logger = setup_logger(__name__)


def _matches(path, prefixes):
    for prefix in prefixes:
        prefix = prefix.rstrip('/') or '/'
        if path == prefix or path.startswith(prefix + '/'):
            return True
    return False


class RouteGate:
    """Redirect rules applied before every request.

    Guests asking for a protected path go to the login path; signed-in
    visitors asking for an auth-only path (login, signup...) go to the
    landing path.
    """

    def __init__(self, protected, auth_only, login_path='/login', landing_path='/focus'):
        self.protected = tuple(protected)
        self.auth_only = tuple(auth_only)
        self.login_path = login_path
        self.landing_path = landing_path

    @classmethod
    def from_config(cls, config):
        return cls(config['PROTECTED_PATHS'], config['AUTH_PATHS'],
                   config['LOGIN_PATH'], config['LANDING_PATH'])

    def decide(self, path, identity):
        """Return the redirect target for ``path``, or None to let it through."""
        if not identity.is_authenticated and _matches(path, self.protected):
            return self.login_path
        if identity.is_authenticated and _matches(path, self.auth_only):
            return self.landing_path
        return None


def init_gate(app, gate):
    @app.before_request
    def gate_request():
        identity = current_identity()
        refreshed = refresh_identity(current_app.extensions['gateway'], identity)
        if refreshed is not identity:
            g.refreshed_identity = refreshed
            current_app.extensions['auth_stream'].publish(
                AuthEvent.TOKEN_REFRESHED, refreshed, refreshed.id)
        g.identity = refreshed

        target = gate.decide(request.path, refreshed)
        if target is not None:
            logger.info(f"redirect {request.path} -> {target}")
            return redirect(target)
        return None

    @app.after_request
    def persist_refreshed_session(response):
        refreshed = g.pop('refreshed_identity', None)
        if refreshed is not None and not getattr(g, 'session_replaced', False):
            set_session_cookies(response, refreshed)
        return response
