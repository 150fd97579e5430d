# gateway.py - 外部托管后端 (认证 / 数据 / 远程过程) 的请求封装
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from events import EventStream
from models import Profile, Task, FocusSession
from utils import setup_logger

logger = setup_logger(__name__)

PROFILE_COLUMNS = "id,username,email,total_xp"
LEADERBOARD_COLUMNS = "id,username,total_xp"
TASK_COLUMNS = "id,user_id,title,completed,priority,due_date,duration_min,spent_min,created_at"

# PostgREST reports row-level policy violations with this SQLSTATE
POLICY_VIOLATION = "42501"


class GatewayError(Exception):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        self.status = status


class AuthError(GatewayError):
    """Bad credentials, unverified account, invalid or expired link."""


class PolicyError(GatewayError):
    """The data store refused the operation for this identity."""


class TransientError(GatewayError):
    """Network failure, timeout or a 5xx from the backend."""


@dataclass
class BackendSession:
    access_token: str
    refresh_token: str
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None
    metadata: Dict = field(default_factory=dict)

    @classmethod
    def from_response(cls, data):
        user = data.get("user") or {}
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in"):
            expires_at = int(time.time()) + int(data["expires_in"])
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", ""),
            user_id=user["id"],
            email=user.get("email"),
            expires_at=expires_at,
            metadata=user.get("user_metadata") or {},
        )


def _error_message(response):
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or f"HTTP {response.status_code}", None
    if not isinstance(body, dict):
        return str(body), None
    for key in ("msg", "message", "error_description", "error"):
        if body.get(key):
            return str(body[key]), body.get("code")
    return f"HTTP {response.status_code}", body.get("code")


class RemoteGateway:
    def __init__(self, url: str, anon_key: str, timeout: Optional[float] = 15):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "RemoteGateway":
        return cls(config["SUPABASE_URL"], config["SUPABASE_ANON_KEY"],
                   config.get("BACKEND_TIMEOUT"))

    def _headers(self, token=None, prefer=None):
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {token or self.anon_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(self, method, path, token=None, params=None, json=None, prefer=None):
        url = f"{self.url}{path}"
        try:
            response = requests.request(method, url, headers=self._headers(token, prefer),
                                        params=params, json=json, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.error(f"{method} {path} 请求失败: {exc}")
            raise TransientError(str(exc)) from exc

        if response.status_code >= 400:
            raise self._error_for(path, response)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _error_for(path, response):
        status = response.status_code
        message, code = _error_message(response)
        logger.warning(f"{path} -> {status}: {message}")
        if status >= 500:
            return TransientError(message, status)
        if path.startswith("/auth/") and status in (400, 401, 403, 422):
            return AuthError(message, status)
        if status in (401, 403) or code == POLICY_VIOLATION:
            return PolicyError(message, status)
        return GatewayError(message, status)

    # --- Auth ---

    def sign_up(self, email: str, password: str, username: str,
                redirect_to: Optional[str] = None) -> Dict:
        params = {"redirect_to": redirect_to} if redirect_to else None
        return self._request("POST", "/auth/v1/signup", params=params, json={
            "email": email,
            "password": password,
            "data": {"username": username},
        })

    def sign_in(self, email: str, password: str) -> BackendSession:
        data = self._request("POST", "/auth/v1/token", params={"grant_type": "password"},
                             json={"email": email, "password": password})
        return BackendSession.from_response(data)

    def refresh(self, refresh_token: str) -> BackendSession:
        data = self._request("POST", "/auth/v1/token", params={"grant_type": "refresh_token"},
                             json={"refresh_token": refresh_token})
        return BackendSession.from_response(data)

    def verify(self, token_hash: str, kind: str = "email") -> BackendSession:
        """Exchange an emailed code for a session."""
        data = self._request("POST", "/auth/v1/verify",
                             json={"type": kind, "token_hash": token_hash})
        return BackendSession.from_response(data)

    def send_password_reset(self, email: str, redirect_to: str) -> None:
        self._request("POST", "/auth/v1/recover", params={"redirect_to": redirect_to},
                      json={"email": email})

    def update_password(self, token: str, password: str) -> Dict:
        return self._request("PUT", "/auth/v1/user", token=token, json={"password": password})

    def sign_out(self, token: str) -> None:
        self._request("POST", "/auth/v1/logout", token=token)

    def get_user(self, token: str) -> Dict:
        return self._request("GET", "/auth/v1/user", token=token)

    # --- Profiles ---

    def get_profile(self, token: str, user_id: str) -> Optional[Profile]:
        rows = self._request("GET", "/rest/v1/profiles", token=token, params={
            "select": PROFILE_COLUMNS,
            "id": f"eq.{user_id}",
        })
        return Profile.from_row(rows[0]) if rows else None

    def find_profile_by_username(self, username: str) -> Optional[Profile]:
        rows = self._request("GET", "/rest/v1/profiles", params={
            "select": "id",
            "username": f"eq.{username}",
            "limit": 1,
        })
        return Profile.from_row(rows[0]) if rows else None

    def insert_profile(self, token: str, profile: Profile) -> None:
        self._request("POST", "/rest/v1/profiles", token=token, prefer="return=minimal",
                      json=profile.to_dict())

    def top_profiles(self, limit: int, token: Optional[str] = None) -> List[Profile]:
        rows = self._request("GET", "/rest/v1/profiles", token=token, params={
            "select": LEADERBOARD_COLUMNS,
            "order": "total_xp.desc,id.asc",
            "limit": limit,
        })
        return [Profile.from_row(row) for row in rows or []]

    # --- Tasks ---

    def list_tasks(self, token: str, user_id: str, since=None, until=None,
                   include_undated=False, order="created_at.asc") -> List[Task]:
        params = [("select", TASK_COLUMNS), ("user_id", f"eq.{user_id}")]
        if since and include_undated:
            params.append(("or", f"(due_date.is.null,due_date.gte.{since.isoformat()})"))
        elif since:
            params.append(("due_date", f"gte.{since.isoformat()}"))
        if until:
            params.append(("due_date", f"lte.{until.isoformat()}"))
        params.append(("order", order))
        rows = self._request("GET", "/rest/v1/tasks", token=token, params=params)
        return [Task.from_row(row) for row in rows or []]

    def insert_task(self, token: str, user_id: str, fields: Dict) -> Task:
        rows = self._request("POST", "/rest/v1/tasks", token=token,
                             params={"select": TASK_COLUMNS},
                             prefer="return=representation",
                             json=dict(fields, user_id=user_id))
        return Task.from_row(rows[0])

    def update_task(self, token: str, user_id: str, task_id: str, fields: Dict) -> None:
        # user_id 过滤防止跨用户修改
        self._request("PATCH", "/rest/v1/tasks", token=token, prefer="return=minimal",
                      params={"id": f"eq.{task_id}", "user_id": f"eq.{user_id}"},
                      json=fields)

    def delete_task(self, token: str, user_id: str, task_id: str) -> None:
        self._request("DELETE", "/rest/v1/tasks", token=token,
                      params={"id": f"eq.{task_id}", "user_id": f"eq.{user_id}"})

    # --- Focus sessions & XP ---

    def insert_focus_session(self, token: str, user_id: str, minutes: int, xp_earned: int) -> None:
        self._request("POST", "/rest/v1/focus_sessions", token=token, prefer="return=minimal",
                      json={"user_id": user_id, "minutes": minutes, "xp_earned": xp_earned})

    def list_focus_sessions(self, token: str, user_id: str) -> List[FocusSession]:
        rows = self._request("GET", "/rest/v1/focus_sessions", token=token, params={
            "select": "user_id,minutes,xp_earned",
            "user_id": f"eq.{user_id}",
        })
        return [FocusSession.from_row(row) for row in rows or []]

    def add_xp(self, token: str, amount: int) -> None:
        """Atomically increment the caller's total_xp on the backend."""
        self._request("POST", "/rest/v1/rpc/add_xp", token=token, json={"amount": amount})


class ProfileChangeFeed:
    """Change notifications for the profiles collection.

    Polls the ranked window while anyone is subscribed and notifies when it
    differs from the previous poll. ``notify`` can also be called directly
    after this process changes a profile.
    """

    def __init__(self, gateway, scheduler, interval=10, window=50):
        self.gateway = gateway
        self.scheduler = scheduler
        self.interval = interval
        self.window = window
        self._stream = EventStream()
        self._poller = None
        self._last = None

    def subscribe(self, callback):
        subscription = self._stream.subscribe(callback)
        if self._poller is None:
            self._poller = self.scheduler.call_every(self.interval, self.poll)
        return _FeedSubscription(self, subscription)

    def _released(self):
        if self._stream.subscriber_count == 0 and self._poller is not None:
            self._poller.cancel()
            self._poller = None
            self._last = None

    def poll(self):
        try:
            profiles = self.gateway.top_profiles(self.window)
        except GatewayError as exc:
            logger.warning(f"排行榜轮询失败: {exc}")
            return
        fingerprint = tuple((p.id, p.username, p.total_xp) for p in profiles)
        changed = self._last is not None and fingerprint != self._last
        self._last = fingerprint
        if changed:
            self.notify()

    def notify(self):
        self._stream.publish()


class _FeedSubscription:
    def __init__(self, feed, subscription):
        self._feed = feed
        self._subscription = subscription

    @property
    def active(self):
        return self._subscription.active

    def unsubscribe(self):
        self._subscription.unsubscribe()
        self._feed._released()
