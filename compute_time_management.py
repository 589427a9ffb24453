# compute_time_management.py — how long the engine may think for one move
import random
from typing import Optional, Tuple

PHASE_CAPS_S = ((30, 30.0), (70, 45.0))  # (ply below, cap); later plies use END_CAP_S
END_CAP_S = 60.0
MIN_THINK_S = 0.02


def phase_cap_seconds(ply: int) -> float:
    for below, cap in PHASE_CAPS_S:
        if ply < below:
            return cap
    return END_CAP_S


def compute_movetime(
    remaining_time_s: float,
    increment_s: float,
    ply: int,
    in_check: bool = False,
    forced: bool = False,
    base_minutes: int = 15,
    jitter: Tuple[float, float] = (0.85, 1.15),
    rng: Optional[random.Random] = None,
) -> float:
    """
    Phase-scaled time budget for one move.

    - keeps a safety reserve of 3s + one increment
    - spreads the rest over an expected number of remaining moves,
      fewer for faster base time controls
    - thinks longer in the opening and when in check, shorter when forced
    - multiplies by a random factor drawn from `jitter`; pass (1.0, 1.0)
      for a reproducible budget
    """
    T = max(0.0, remaining_time_s)
    I = max(0.0, increment_s)
    P = max(0, ply)

    safe_bank = 3.0 + 1.0 * I
    if T <= safe_bank:
        # Sudden death: play almost instantly
        return max(0.2, T * 0.25)

    if base_minutes >= 15:
        RM = 35
    elif base_minutes >= 5:
        RM = 25
    else:
        RM = 15

    # Half the increment is counted into the usable pool
    pool = (T - safe_bank) + 0.5 * I * RM
    budget = pool / RM

    if P < 20:
        budget *= 1.5
    elif P < 60:
        budget *= 1.2

    if in_check:
        budget *= 1.3
    if forced:
        budget *= 0.7

    budget = min(budget, T - safe_bank)
    budget = min(budget, 60.0)
    budget = max(budget, 2.0)

    lo, hi = jitter
    budget *= (rng or random).uniform(lo, hi)
    return float(budget)


def think_time(
    remaining_ms: Optional[int],
    increment_ms: Optional[int],
    ply: int,
    in_check: bool,
    forced: bool,
    base_minutes: Optional[int] = None,
    overhead_ms: int = 200,
    fallback_s: float = 0.4,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to hand the engine, never spending past the clock minus a latency guard."""
    if remaining_ms is None or remaining_ms <= 0:
        return fallback_s
    sec_left = remaining_ms / 1000.0
    inc_s = max(0.0, (increment_ms or 0) / 1000.0)
    if base_minutes is None:
        base_minutes = max(1, int(round(sec_left / 60)))
    movetime = compute_movetime(
        remaining_time_s=sec_left,
        increment_s=inc_s,
        ply=ply,
        in_check=in_check,
        forced=forced,
        base_minutes=base_minutes,
        rng=rng,
    )
    movetime = min(movetime, phase_cap_seconds(ply))
    guard = 2.5 * max(MIN_THINK_S, overhead_ms / 1000.0)
    return max(MIN_THINK_S, min(movetime, sec_left - guard))
