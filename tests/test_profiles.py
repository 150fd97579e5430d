import pytest

from gateway import BackendSession
from models import FocusSession, Profile
from profiles import (ProfileNotFound, default_username, ensure_profile, focus_stats,
                      initials, load_profile, xp_drift)


def session_for(user_id='u9', email='grace@example.com', metadata=None):
    return BackendSession(access_token=f"token-{user_id}", refresh_token='r', user_id=user_id,
                          email=email, metadata=metadata or {})


@pytest.mark.parametrize("email, metadata, expected", [
    ('grace@example.com', {'username': 'grace_h'}, 'grace_h'),
    ('grace@example.com', {}, 'grace'),
    (None, {}, 'user'),
])
def test_default_username(email, metadata, expected):
    assert default_username(session_for(email=email, metadata=metadata)) == expected


def test_ensure_profile_creates_missing_row_once(gateway):
    session = session_for(metadata={'username': 'grace_h'})
    created = ensure_profile(gateway, session)
    assert created == Profile('u9', 'grace_h', 'grace@example.com', 0)
    assert gateway.count('insert_profile') == 1

    ensure_profile(gateway, session)
    assert gateway.count('insert_profile') == 1


def test_load_profile_retries_once_after_pause(gateway, member):
    row = gateway.profiles.pop('u1')
    pauses = []

    def sleep(seconds):
        pauses.append(seconds)
        gateway.profiles['u1'] = row

    assert load_profile(gateway, member, sleep=sleep) == row
    assert pauses == [0.8]
    assert gateway.count('get_profile') == 2


def test_load_profile_gives_up_after_one_retry(gateway, member):
    del gateway.profiles['u1']
    with pytest.raises(ProfileNotFound):
        load_profile(gateway, member, sleep=lambda s: None)
    assert gateway.count('get_profile') == 2


def test_focus_stats_and_drift(gateway, member):
    gateway.sessions += [FocusSession('u1', 25, 250), FocusSession('u1', 50, 250),
                         FocusSession('u2', 25, 250)]
    stats = focus_stats(gateway, member)
    assert stats == {'sessions': 2, 'minutes': 75, 'xp_earned': 500}
    # profile says 750, sessions only account for 500
    assert xp_drift(gateway.profiles['u1'], stats) == -250


@pytest.mark.parametrize("username, expected", [
    ('ada lovelace', 'AL'), ('ada', 'A'), ('a b c', 'AB'), (None, ''),
])
def test_initials(username, expected):
    assert initials(username) == expected
