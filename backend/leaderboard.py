from dataclasses import dataclass
from typing import List, Optional

import xp
from gateway import GatewayError
from models import Profile
from utils import setup_logger

logger = setup_logger(__name__)

GUEST_LIMIT = 5
MEMBER_LIMIT = 50
MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}


def rank_profiles(profiles) -> List[Profile]:
    """Highest XP first; equal XP ordered by profile id."""
    return sorted(profiles, key=lambda p: (-p.total_xp, p.id))


@dataclass
class RankCard:
    rank: int
    profile: Profile
    level: int
    progress: float
    xp_to_next_level: int

    def to_dict(self):
        return {
            'rank': self.rank,
            'username': self.profile.username or "You",
            'total_xp': self.profile.total_xp,
            'level': self.level,
            'progress': self.progress,
            'xp_to_next_level': self.xp_to_next_level,
        }


def rank_card(ranked, user_id) -> Optional[RankCard]:
    """Rank card for ``user_id``; None when outside the fetched window."""
    for index, profile in enumerate(ranked):
        if profile.id == user_id:
            return RankCard(
                rank=index + 1,
                profile=profile,
                level=xp.level(profile.total_xp),
                progress=xp.progress_fraction(profile.total_xp),
                xp_to_next_level=xp.xp_to_next_level(profile.total_xp),
            )
    return None


class LeaderboardView:
    """Ranked profiles, reloaded on every profile change notification.

    Reloads are not coalesced: the last one to finish wins.
    """

    kind = 'leaderboard'

    def __init__(self, gateway, identity, feed=None):
        self.gateway = gateway
        self.identity = identity
        self.feed = feed
        self.profiles: List[Profile] = []
        self.error = None
        self._subscription = None

    @property
    def limit(self):
        return MEMBER_LIMIT if self.identity.is_authenticated else GUEST_LIMIT

    def mount(self):
        self.reload()
        if self.feed is not None:
            self._subscription = self.feed.subscribe(self.reload)
        return self

    def reload(self):
        token = self.identity.access_token if self.identity.is_authenticated else None
        try:
            profiles = self.gateway.top_profiles(self.limit, token)
        except GatewayError as exc:
            logger.warning(f"leaderboard reload failed: {exc}")
            self.error = str(exc)
            return
        self.error = None
        self.profiles = rank_profiles(profiles)

    def my_rank(self):
        if not self.identity.is_authenticated:
            return None
        return rank_card(self.profiles, self.identity.id)

    def rebind(self, identity):
        self.identity = identity
        self.reload()

    def teardown(self):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def snapshot(self):
        me = self.my_rank()
        return {
            'obscured': not self.identity.is_authenticated,
            'entries': [
                {
                    'rank': rank,
                    'badge': MEDALS.get(rank, f"#{rank}"),
                    'id': p.id,
                    'username': p.username or "Anonymous",
                    'total_xp': p.total_xp,
                }
                for rank, p in enumerate(self.profiles, start=1)
            ],
            'me': me.to_dict() if me else None,
            'error': self.error,
        }
