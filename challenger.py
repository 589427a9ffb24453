# challenger.py — outgoing challenges: a rating-banded random batch, or named users
from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from bot_config import ChallengerConfig, TimeControlConstraint, TimeLimit
from botlog import log
from errors import ConfigError, RemoteCallError
from lichess_gateway import LichessGateway, swallow_or_log

SPECIFIC_PAUSE_SECS = 3.0


def perf_for_limit(limit_sec: int, inc_sec: int = 0) -> str:
    """Lichess speed bucket for a clock, from its estimated duration limit + 40 * increment."""
    estimate = limit_sec + 40 * inc_sec
    if estimate < 30:
        return "ultraBullet"
    if estimate < 180:
        return "bullet"
    if estimate < 480:
        return "blitz"
    if estimate < 1500:
        return "rapid"
    return "classical"


@dataclass(frozen=True)
class Opponent:
    user_id: str
    rating: int


def bot_rating(bot: dict, perf_key: str) -> Optional[int]:
    rating = ((bot.get("perfs") or {}).get(perf_key) or {}).get("rating")
    return int(rating) if isinstance(rating, (int, float)) else None


def pick_opponents(
    bots: Sequence[dict],
    our_id: str,
    our_rating: int,
    perf_key: str,
    count: int,
    harder_percentage: int,
) -> List[Opponent]:
    """
    The strongest bots at or below our rating for the easier share, then the
    weakest bots above it for the harder share.
    """
    pool = []
    for b in bots:
        uid = (b.get("id") or "").lower()
        rating = bot_rating(b, perf_key)
        if not uid or uid == our_id or rating is None:
            continue
        pool.append(Opponent(uid, rating))
    pool.sort(key=lambda o: (o.rating, o.user_id))

    harder = (count * harder_percentage) // 100
    easier = count - harder
    below = [o for o in pool if o.rating <= our_rating]
    above = [o for o in pool if o.rating > our_rating]
    return list(reversed(below))[:easier] + above[:harder]


class Challenger:
    def __init__(
        self,
        our_id: str,
        gateway: LichessGateway,
        config: ChallengerConfig,
        constraints: TimeControlConstraint,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.our_id = our_id.lower()
        self.gateway = gateway
        self.config = config
        self.constraints = constraints
        self._rng = rng or random.Random()
        self._sleep = sleep

    def _valid_options(self) -> List[TimeLimit]:
        options = [o for o in self.config.time_limit_options if self.constraints.allows(o.limit, o.increment)]
        if not options:
            raise ConfigError("challenger.time_limit_options has no clock inside challenge.time_constraints")
        return options

    def random_batch(self) -> List[Opponent]:
        """Challenge `challenge_count` online bots around our rating; returns who was challenged."""
        cfg = self.config
        tl = self._rng.choice(self._valid_options())
        perf_key = perf_for_limit(tl.limit, tl.increment)
        our_rating = self.gateway.rating(self.our_id, perf_key)
        if our_rating is None:
            log(f"No {perf_key} rating for {self.our_id}; not challenging.", "⬇️")
            return []
        bots = self.gateway.online_bots()
        opponents = pick_opponents(bots, self.our_id, our_rating, perf_key, cfg.challenge_count, cfg.harder_percentage)
        log(
            f"Challenging {len(opponents)} bots at {tl.limit}+{tl.increment} ({perf_key}, ours {our_rating})",
            "🎯",
        )
        sent = []
        for opp in opponents:
            if self._send(opp.user_id, tl, cfg.rated):
                sent.append(opp)
        return sent

    def specific(self, user_id: str, limit: int, increment: int, repeat: int = 1, rated: Optional[bool] = None) -> int:
        """Challenge one user `repeat` times with a pause between requests; returns how many were sent."""
        tl = TimeLimit(limit=limit, increment=increment)
        if not self.constraints.allows(tl.limit, tl.increment):
            raise ConfigError(f"{limit}+{increment} is outside challenge.time_constraints")
        rated = self.config.rated if rated is None else rated
        sent = 0
        for i in range(max(0, repeat)):
            if i:
                self._sleep(SPECIFIC_PAUSE_SECS)
            if self._send(user_id, tl, rated):
                sent += 1
        return sent

    def _send(self, user_id: str, tl: TimeLimit, rated: bool) -> bool:
        try:
            self.gateway.create_challenge(user_id, rated=rated, limit=tl.limit, increment=tl.increment)
        except RemoteCallError as e:
            swallow_or_log("challenge_create", e, f"(user={user_id})")
            return False
        log(f"Challenge sent to {user_id}", "🎯")
        return True
