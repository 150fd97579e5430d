import pytest

from events import EventStream
from gateway import BackendSession, TransientError
from identity import (ANONYMOUS, AuthEvent, AuthStateStream, Authenticated,
                      refresh_identity)
from profiles import DisplayNames
from views import ViewRegistry


def test_events_delivered_in_publish_order():
    stream = EventStream()
    seen_a, seen_b = [], []

    def first(value):
        seen_a.append(value)
        if value == 1:
            stream.publish(2)

    stream.subscribe(first)
    stream.subscribe(seen_b.append)
    stream.publish(1)

    assert seen_a == [1, 2]
    assert seen_b == [1, 2]


def test_unsubscribe_stops_delivery():
    stream = EventStream()
    seen = []
    subscription = stream.subscribe(seen.append)
    stream.publish('a')
    subscription.unsubscribe()
    subscription.unsubscribe()
    stream.publish('b')
    assert seen == ['a']
    assert stream.subscriber_count == 0


def test_failing_subscriber_does_not_wedge_stream():
    stream = EventStream()
    seen = []

    def explode(value):
        if value == 'boom':
            raise RuntimeError(value)
        seen.append(value)

    stream.subscribe(explode)
    with pytest.raises(RuntimeError):
        stream.publish('boom')
    stream.publish('ok')
    assert seen == ['ok']


def test_identity_variants():
    member = Authenticated(id='u1', email='ada@example.com', access_token='secret')
    assert member.is_authenticated
    assert not ANONYMOUS.is_authenticated
    assert 'secret' not in repr(member)
    assert member == Authenticated(id='u1', email='ada@example.com', access_token='other')


def test_stale_token_is_refreshed(gateway):
    member = Authenticated(id='u1', access_token='token-u1', refresh_token='refresh-u1',
                           expires_at=100)
    refreshed = refresh_identity(gateway, member)
    assert refreshed is not member
    assert refreshed.access_token == 'token-u1'
    assert gateway.count('refresh') == 1


def test_fresh_or_failed_refresh_keeps_identity(gateway):
    fresh = Authenticated(id='u1', access_token='t', refresh_token='r', expires_at=None)
    assert refresh_identity(gateway, fresh) is fresh

    stale = Authenticated(id='u1', access_token='t', refresh_token='refresh-u1', expires_at=1)
    gateway.failures['refresh'] = TransientError("down")
    assert refresh_identity(gateway, stale) is stale


def test_display_names_follow_auth_events(gateway, member):
    stream = AuthStateStream()
    names = DisplayNames(gateway, stream)
    stream.publish(AuthEvent.SIGNED_IN, member)
    assert names.get(member) == 'ada'

    gateway.profiles['u1'].username = 'ada-renamed'
    assert names.get(member) == 'ada'
    stream.publish(AuthEvent.USER_UPDATED, member)
    assert names.get(member) == 'ada-renamed'

    stream.publish(AuthEvent.SIGNED_OUT, member)
    del gateway.profiles['u1']
    assert names.get(member) == 'ada'  # email local part
    assert names.get(ANONYMOUS) == ''


class StubView:
    kind = 'stub'
    busy = False

    def __init__(self, identity):
        self.identity = identity
        self.torn_down = False
        self.rebound = None

    def rebind(self, identity):
        self.rebound = identity
        self.identity = identity

    def teardown(self):
        self.torn_down = True


def test_registry_tears_down_views_on_sign_out(member):
    stream = AuthStateStream()
    registry = ViewRegistry(stream)
    view = registry.get_or_mount('u1', 'stub', member, lambda: StubView(member))
    assert registry.get_or_mount('u1', 'stub', member, lambda: StubView(member)) is view

    stream.publish(AuthEvent.SIGNED_OUT, member, 'u1')
    assert view.torn_down
    assert registry.get('u1', 'stub') is None


def test_registry_drops_guest_views_on_sign_in(member):
    stream = AuthStateStream()
    registry = ViewRegistry(stream)
    guest_view = registry.get_or_mount('guest-1', 'stub', ANONYMOUS, lambda: StubView(ANONYMOUS))
    stream.publish(AuthEvent.SIGNED_IN, member, 'guest-1')
    assert guest_view.torn_down


def test_registry_rebinds_on_new_token(member):
    registry = ViewRegistry(AuthStateStream())
    view = registry.get_or_mount('u1', 'stub', member, lambda: StubView(member))
    renewed = Authenticated.from_session(BackendSession('new-token', 'r', 'u1', member.email))
    assert registry.get_or_mount('u1', 'stub', renewed, lambda: StubView(renewed)) is view
    assert view.rebound is renewed


def test_registry_expires_idle_views(scheduler, member):
    registry = ViewRegistry(AuthStateStream(), scheduler, idle_ttl=600, sweep_interval=60)
    idle = registry.get_or_mount('guest-1', 'stub', ANONYMOUS, lambda: StubView(ANONYMOUS))
    running = StubView(member)
    running.busy = True
    registry.get_or_mount('u1', 'stub', member, lambda: running)

    scheduler.advance(300)
    recent = registry.get_or_mount('guest-2', 'stub', ANONYMOUS, lambda: StubView(ANONYMOUS))
    scheduler.advance(360)

    assert idle.torn_down
    assert registry.get('guest-1', 'stub') is None
    assert registry.get('u1', 'stub') is running
    assert registry.get('guest-2', 'stub') is recent
    assert len(registry) == 2

    registry.close()
    assert running.torn_down
    assert scheduler.active == []


def test_registry_without_ttl_keeps_views(scheduler):
    registry = ViewRegistry(AuthStateStream(), scheduler)
    registry.get_or_mount('guest-1', 'stub', ANONYMOUS, lambda: StubView(ANONYMOUS))
    scheduler.advance(10 ** 6)
    assert len(registry) == 1
    assert scheduler.active == []
