import itertools
from datetime import datetime, timezone

import pytest

from app import create_app
from config import Config
from gateway import AuthError, BackendSession
from identity import Authenticated
from models import Priority, Profile, Task, FocusSession
from utils import parse_date


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    JWT_SECRET_KEY = 'test-jwt-secret-key-with-enough-length'
    JWT_COOKIE_CSRF_PROTECT = False
    JWT_COOKIE_SECURE = False
    PROFILE_RETRY_DELAY = 0
    SITE_URL = 'http://focuzxp.test'


class _Job:
    def __init__(self, seq, due, interval, fn):
        self.seq = seq
        self.due = due
        self.interval = interval
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by ``advance`` instead of wall-clock time."""

    def __init__(self):
        self.now = 0
        self.jobs = []
        self._seq = itertools.count()

    def clock(self):
        return self.now

    def call_every(self, interval, fn):
        job = _Job(next(self._seq), self.now + interval, interval, fn)
        self.jobs.append(job)
        return job

    def call_later(self, delay, fn):
        job = _Job(next(self._seq), self.now + delay, None, fn)
        self.jobs.append(job)
        return job

    @property
    def active(self):
        return [j for j in self.jobs if not j.cancelled]

    def advance(self, seconds):
        end = self.now + seconds
        while True:
            due = [j for j in self.jobs if not j.cancelled and j.due <= end]
            if not due:
                break
            job = min(due, key=lambda j: (j.due, j.seq))
            self.now = job.due
            if job.interval:
                job.due += job.interval
            else:
                job.cancelled = True
            job.fn()
        self.now = end
        self.jobs = [j for j in self.jobs if not j.cancelled]


def token_for(user_id):
    return f"token-{user_id}"


class FakeGateway:
    """In-memory stand-in for the managed backend.

    ``failures`` maps a method name to the exception it should raise and
    ``hooks`` maps a method name to a callable run when it is invoked.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.hooks = {}
        self.users = {}
        self.codes = {}
        self.profiles = {}
        self.tasks = {}
        self.sessions = []
        self._ids = itertools.count(1)

    def _call(self, name, *args):
        self.calls.append((name, args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook()
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)

    def _user_of(self, token):
        assert token and token.startswith('token-'), f"unexpected token {token!r}"
        return token[len('token-'):]

    # seeding helpers

    def add_user(self, user_id, email, password='secret', username=None, profile=True, total_xp=0):
        self.users[email] = {'id': user_id, 'password': password, 'username': username}
        if profile:
            self.profiles[user_id] = Profile(id=user_id, username=username, email=email,
                                             total_xp=total_xp)

    def add_task(self, user_id, title, **fields):
        if 'priority' in fields:
            fields['priority'] = Priority.parse(fields['priority'])
        task = Task(id=str(next(self._ids)), title=title, user_id=user_id,
                    created_at=datetime.now(timezone.utc), **fields)
        self.tasks[task.id] = task
        return task

    def _session(self, user_id, email, metadata=None):
        return BackendSession(access_token=token_for(user_id), refresh_token=f"refresh-{user_id}",
                              user_id=user_id, email=email, metadata=metadata or {})

    # auth

    def sign_up(self, email, password, username, redirect_to=None):
        self._call('sign_up', email, username, redirect_to)
        user_id = f"u{next(self._ids)}"
        self.users[email] = {'id': user_id, 'password': password, 'username': username}
        return {'id': user_id, 'email': email}

    def sign_in(self, email, password):
        self._call('sign_in', email)
        user = self.users.get(email)
        if user is None or user['password'] != password:
            raise AuthError("Invalid login credentials", 400)
        return self._session(user['id'], email)

    def refresh(self, refresh_token):
        self._call('refresh', refresh_token)
        user_id = refresh_token[len('refresh-'):]
        return self._session(user_id, None)

    def verify(self, token_hash, kind='email'):
        self._call('verify', token_hash, kind)
        if token_hash not in self.codes:
            raise AuthError("Email link is invalid or has expired", 403)
        email = self.codes[token_hash]
        user = self.users[email]
        return self._session(user['id'], email, {'username': user['username']})

    def send_password_reset(self, email, redirect_to):
        self._call('send_password_reset', email, redirect_to)

    def update_password(self, token, password):
        self._call('update_password', token)
        user_id = self._user_of(token)
        for user in self.users.values():
            if user['id'] == user_id:
                user['password'] = password
        return {'id': user_id}

    def sign_out(self, token):
        self._call('sign_out', token)

    def get_user(self, token):
        self._call('get_user', token)
        return {'id': self._user_of(token)}

    # profiles

    def get_profile(self, token, user_id):
        self._call('get_profile', token, user_id)
        return self.profiles.get(user_id)

    def find_profile_by_username(self, username):
        self._call('find_profile_by_username', username)
        for profile in self.profiles.values():
            if profile.username == username:
                return profile
        return None

    def insert_profile(self, token, profile):
        self._call('insert_profile', token, profile.id)
        self.profiles[profile.id] = profile

    def top_profiles(self, limit, token=None):
        self._call('top_profiles', limit)
        ranked = sorted(self.profiles.values(), key=lambda p: (-p.total_xp, p.id))
        return [Profile(p.id, p.username, None, p.total_xp) for p in ranked[:limit]]

    # tasks

    def list_tasks(self, token, user_id, since=None, until=None, include_undated=False,
                   order='created_at.asc'):
        self._call('list_tasks', token, user_id, since, until, include_undated)
        result = []
        for task in self.tasks.values():
            if task.user_id != user_id:
                continue
            if task.due_date is None:
                if since is not None and not include_undated:
                    continue
                if until is not None:
                    continue
            else:
                if since is not None and task.due_date < since:
                    continue
                if until is not None and task.due_date > until:
                    continue
            result.append(Task(**vars(task)))
        return result

    def insert_task(self, token, user_id, fields):
        self._call('insert_task', token, user_id, fields)
        task = self.add_task(user_id, fields['title'],
                             priority=fields.get('priority', 'medium'),
                             due_date=parse_date(fields.get('due_date')),
                             duration_min=fields.get('duration_min', 25),
                             spent_min=fields.get('spent_min', 0))
        return Task(**vars(task))

    def update_task(self, token, user_id, task_id, fields):
        self._call('update_task', token, user_id, task_id, fields)
        task = self.tasks.get(task_id)
        if task is not None and task.user_id == user_id:
            for key, value in fields.items():
                setattr(task, key, value)

    def delete_task(self, token, user_id, task_id):
        self._call('delete_task', token, user_id, task_id)
        task = self.tasks.get(task_id)
        if task is not None and task.user_id == user_id:
            del self.tasks[task_id]

    # focus sessions and XP

    def insert_focus_session(self, token, user_id, minutes, xp_earned):
        self._call('insert_focus_session', token, user_id, minutes, xp_earned)
        self.sessions.append(FocusSession(user_id, minutes, xp_earned))

    def list_focus_sessions(self, token, user_id):
        self._call('list_focus_sessions', token, user_id)
        return [s for s in self.sessions if s.user_id == user_id]

    def add_xp(self, token, amount):
        self._call('add_xp', token, amount)
        self.profiles[self._user_of(token)].total_xp += amount


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def member(gateway):
    gateway.add_user('u1', 'ada@example.com', username='ada', total_xp=750)
    return Authenticated(id='u1', email='ada@example.com', access_token=token_for('u1'),
                         refresh_token='refresh-u1')


@pytest.fixture
def app(gateway, scheduler):
    return create_app(TestConfig, gateway=gateway, scheduler=scheduler)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signed_in(client, gateway, member):
    response = client.post('/login', json={'email': 'ada@example.com', 'password': 'secret'})
    assert response.status_code == 200
    return client
