"""Tests for outgoing challenges."""

import random
from unittest.mock import MagicMock

import pytest

from bot_config import ChallengerConfig, TimeControlConstraint, TimeLimit
from challenger import Challenger, perf_for_limit, pick_opponents
from errors import ConfigError, RemoteCallError
from tests.fakes import BOT_ID, FakeGateway


def _bot(uid, rating, perf="blitz"):
    return {"id": uid, "perfs": {perf: {"rating": rating}}}


BOTS = [
    _bot("a", 1300),
    _bot("b", 1450),
    _bot("c", 1500),
    _bot("d", 1550),
    _bot("e", 1700),
    _bot(BOT_ID, 1500),
    {"id": "norating", "perfs": {}},
]


@pytest.mark.parametrize(
    "limit, inc, perf",
    [(15, 0, "ultraBullet"), (60, 1, "bullet"), (180, 2, "blitz"), (600, 5, "rapid"), (1800, 0, "classical")],
)
def test_perf_for_limit(limit, inc, perf):
    assert perf_for_limit(limit, inc) == perf


class TestPickOpponents:
    def test_easier_and_harder_shares(self):
        picked = pick_opponents(BOTS, BOT_ID, 1500, "blitz", count=4, harder_percentage=25)
        assert [o.user_id for o in picked] == ["c", "b", "a", "d"]

    def test_all_harder(self):
        picked = pick_opponents(BOTS, BOT_ID, 1500, "blitz", count=2, harder_percentage=100)
        assert [o.user_id for o in picked] == ["d", "e"]

    def test_never_picks_ourselves(self):
        picked = pick_opponents(BOTS, BOT_ID, 1500, "blitz", count=10, harder_percentage=0)
        assert BOT_ID not in [o.user_id for o in picked]


def _challenger(gateway, sleeps=None, **config):
    config.setdefault("time_limit_options", (TimeLimit(180, 2),))
    return Challenger(
        BOT_ID,
        gateway,
        ChallengerConfig(**config),
        TimeControlConstraint(),
        rng=random.Random(7),
        sleep=(sleeps if sleeps is not None else []).append,
    )


class TestRandomBatch:
    def test_challenges_picked_bots(self):
        gateway = FakeGateway()
        gateway.bots = BOTS
        gateway.ratings[(BOT_ID, "blitz")] = 1500
        sent = _challenger(gateway, challenge_count=2, harder_percentage=50, rated=False).random_batch()

        assert [o.user_id for o in sent] == ["c", "d"]
        assert gateway.challenges == [("c", False, 180, 2), ("d", False, 180, 2)]

    def test_no_rating_sends_nothing(self):
        gateway = FakeGateway()
        gateway.bots = BOTS
        assert _challenger(gateway).random_batch() == []
        assert gateway.challenges == []

    def test_options_outside_constraints(self):
        gateway = FakeGateway()
        with pytest.raises(ConfigError):
            _challenger(gateway, time_limit_options=(TimeLimit(15, 0),)).random_batch()


class TestSpecific:
    def test_repeat_with_pauses(self):
        gateway = FakeGateway()
        sleeps = []
        sent = _challenger(gateway, sleeps).specific("someone", 300, 3, repeat=3)
        assert sent == 3
        assert gateway.challenges == [("someone", True, 300, 3)] * 3
        assert sleeps == [3.0, 3.0]

    def test_failures_counted_out(self):
        gateway = FakeGateway()
        gateway.create_challenge = MagicMock(
            side_effect=RemoteCallError("challenge_create", 400, Exception("bot is not accepting"))
        )
        assert _challenger(gateway).specific("someone", 300, 3, repeat=2) == 0

    def test_out_of_bounds_clock(self):
        with pytest.raises(ConfigError):
            _challenger(FakeGateway()).specific("someone", 7200, 0)
