# challenge_filter.py — accept/decline decision for incoming challenges
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bot_config import ChallengePolicy

PARAMETER = "parameter"
PATTERN = "pattern"
NO_MATCH = "no-match"


class DeclineReason(Enum):
    """Each member carries (code, category, Lichess decline reason key)."""

    VARIANT = ("variant", PARAMETER, "standard")
    NO_CLOCK = ("no-clock", PARAMETER, "timeControl")
    TOO_FAST = ("too-fast", PARAMETER, "tooFast")
    TOO_SLOW = ("too-slow", PARAMETER, "tooSlow")
    INCREMENT = ("increment", PARAMETER, "timeControl")
    WANT_RATED = ("want-rated", PARAMETER, "rated")
    WANT_CASUAL = ("want-casual", PARAMETER, "casual")
    EXCLUDED_USER = ("excluded-user", PATTERN, "generic")
    NOT_INCLUDED = ("not-included", NO_MATCH, "generic")
    RATE_LIMITED = ("rate-limited", "rate-limit", "later")

    @property
    def code(self) -> str:
        return self.value[0]

    @property
    def category(self) -> str:
        return self.value[1]

    @property
    def lichess_key(self) -> str:
        return self.value[2]


@dataclass(frozen=True)
class ChallengeRecord:
    challenge_id: str
    opponent_id: str
    rated: bool
    variant: str
    initial_secs: Optional[int]  # None when the challenge has no real-time clock
    increment_secs: Optional[int]
    dest_id: str = ""
    status: str = "created"

    @classmethod
    def from_event(cls, ch: dict) -> Optional["ChallengeRecord"]:
        """Build from the `challenge` object of a Lichess challenge event; None if it has no id."""
        cid = ch.get("id")
        if not cid:
            return None
        tc = ch.get("timeControl") or {}
        has_clock = (tc.get("type") or "clock") == "clock" and tc.get("limit") is not None
        return cls(
            challenge_id=cid,
            opponent_id=((ch.get("challenger") or {}).get("id") or "").lower(),
            rated=bool(ch.get("rated", False)),
            variant=((ch.get("variant") or {}).get("key") or "standard").lower(),
            initial_secs=int(tc.get("limit")) if has_clock else None,
            increment_secs=int(tc.get("increment") or 0) if has_clock else None,
            dest_id=((ch.get("destUser") or {}).get("id") or "").lower(),
            status=(ch.get("status") or "created").lower(),
        )


@dataclass(frozen=True)
class Decision:
    accepted: bool
    reason: Optional[DeclineReason] = None

    @classmethod
    def accept(cls) -> "Decision":
        return cls(True)

    @classmethod
    def decline(cls, reason: DeclineReason) -> "Decision":
        return cls(False, reason)


def decide(record: ChallengeRecord, policy: ChallengePolicy) -> Decision:
    """Parameters first, then opponent patterns. Never looks at rate-limit state."""
    if record.variant not in policy.variants:
        return Decision.decline(DeclineReason.VARIANT)
    if record.initial_secs is None:
        return Decision.decline(DeclineReason.NO_CLOCK)
    if policy.rated == "rated" and not record.rated:
        return Decision.decline(DeclineReason.WANT_RATED)
    if policy.rated == "casual" and record.rated:
        return Decision.decline(DeclineReason.WANT_CASUAL)

    tc = policy.time_constraints
    if record.initial_secs < tc.min_initial_secs:
        return Decision.decline(DeclineReason.TOO_FAST)
    if record.initial_secs > tc.max_initial_secs:
        return Decision.decline(DeclineReason.TOO_SLOW)
    if not tc.increment_ok(record.increment_secs or 0):
        return Decision.decline(DeclineReason.INCREMENT)

    identity = policy.identity
    if any(m.matches(record.opponent_id) for m in identity.exclude_patterns):
        return Decision.decline(DeclineReason.EXCLUDED_USER)
    includes = identity.include_patterns
    if includes and not any(m.matches(record.opponent_id) for m in includes):
        return Decision.decline(DeclineReason.NOT_INCLUDED)
    return Decision.accept()
