# bot_config.py — config.yml → typed, immutable settings
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from errors import ConfigError

RATED_POLICIES = ("any", "rated", "casual")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = cfg.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping, got {type(value).__name__}")
    return value


def _number(section: Dict[str, Any], key: str, default, kind=float, minimum=0):
    raw = section.get(key, default)
    try:
        value = kind(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {raw!r}")
    if minimum is not None and value < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {value}")
    return value


def _time_limit(option) -> "TimeLimit":
    if not isinstance(option, dict):
        raise ConfigError(f"challenger.time_limit_options entries must be mappings, got {option!r}")
    return TimeLimit(
        limit=_number(option, "limit", 0, int),
        increment=_number(option, "increment", 0, int),
    )


@dataclass(frozen=True)
class UserMatcher:
    include: bool
    pattern: str

    def __post_init__(self):
        try:
            re.compile(self.pattern)
        except re.error as e:
            raise ConfigError(f"Bad user pattern {self.pattern!r}: {e}")

    def matches(self, user_id: str) -> bool:
        return re.search(self.pattern, user_id or "") is not None


@dataclass(frozen=True)
class BotIdentity:
    bot_id: str
    matchers: Tuple[UserMatcher, ...] = ()

    @property
    def include_patterns(self) -> Tuple[UserMatcher, ...]:
        return tuple(m for m in self.matchers if m.include)

    @property
    def exclude_patterns(self) -> Tuple[UserMatcher, ...]:
        return tuple(m for m in self.matchers if not m.include)


@dataclass(frozen=True)
class TimeControlConstraint:
    min_initial_secs: int = 60
    max_initial_secs: int = 1800
    min_increment_secs: int = 0
    max_increment_secs: int = 30

    def __post_init__(self):
        if self.min_initial_secs > self.max_initial_secs:
            raise ConfigError("min_initial_time_secs > max_initial_time_secs")
        if self.min_increment_secs > self.max_increment_secs:
            raise ConfigError("min_increment_secs > max_increment_secs")

    def initial_ok(self, initial_secs: int) -> bool:
        return self.min_initial_secs <= initial_secs <= self.max_initial_secs

    def increment_ok(self, increment_secs: int) -> bool:
        return self.min_increment_secs <= increment_secs <= self.max_increment_secs

    def allows(self, initial_secs: int, increment_secs: int) -> bool:
        return self.initial_ok(initial_secs) and self.increment_ok(increment_secs)


@dataclass(frozen=True)
class ChallengePolicy:
    identity: BotIdentity
    variants: Tuple[str, ...] = ("standard",)
    rated: str = "any"  # any|rated|casual
    time_constraints: TimeControlConstraint = field(default_factory=TimeControlConstraint)

    def __post_init__(self):
        if self.rated not in RATED_POLICIES:
            raise ConfigError(f"challenge.rated must be one of {RATED_POLICIES}, got {self.rated!r}")


@dataclass(frozen=True)
class RateLimitConfig:
    database: str = "challenges.sqlite3"
    max_daily_challenges: int = 100
    max_daily_user_challenges: int = 5
    excluded: Tuple[str, ...] = ()
    # Excluded users skip the per-user ceiling; this decides whether they still use a global slot.
    excluded_consume_global: bool = True


@dataclass(frozen=True)
class EventLoopConfig:
    retry_wait_duration_secs: float = 5.0
    status_poll_gap_secs: float = 60.0
    max_stream_life_mins: float = 30.0


@dataclass(frozen=True)
class GameFunctionConfig:
    abort_after_secs: float = 30.0
    max_recursion_depth: int = 3
    invocation_limit_secs: float = 900.0
    handoff_margin_secs: float = 60.0
    handoff_delay_secs: float = 1.0
    retry_wait_duration_secs: float = 5.0

    def __post_init__(self):
        if self.handoff_margin_secs >= self.invocation_limit_secs:
            raise ConfigError("handoff_margin_secs must be smaller than invocation_limit_secs")


@dataclass(frozen=True)
class OpeningBookConfig:
    path: str = ""
    max_depth: int = 10


@dataclass(frozen=True)
class MoveComputerConfig:
    kind: str = "engine"  # engine|remote
    engine_path: str = ""
    threads: int = 1
    hash_mb: int = 256
    move_overhead_ms: int = 200
    syzygy_path: str = ""
    url: str = ""
    timeout_secs: float = 60.0

    def __post_init__(self):
        if self.kind not in ("engine", "remote"):
            raise ConfigError(f"move_computer.kind must be engine|remote, got {self.kind!r}")


@dataclass(frozen=True)
class TimeLimit:
    limit: int
    increment: int


@dataclass(frozen=True)
class ChallengerConfig:
    rated: bool = True
    challenge_count: int = 3
    harder_percentage: int = 25
    time_limit_options: Tuple[TimeLimit, ...] = ()


@dataclass(frozen=True)
class LoggingConfig:
    log_to_file: bool = False
    log_dir: str = "logs"


@dataclass(frozen=True)
class BotConfig:
    token: str
    policy: ChallengePolicy
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    event_loop: EventLoopConfig = field(default_factory=EventLoopConfig)
    game_function: GameFunctionConfig = field(default_factory=GameFunctionConfig)
    opening_book: OpeningBookConfig = field(default_factory=OpeningBookConfig)
    move_computer: MoveComputerConfig = field(default_factory=MoveComputerConfig)
    challenger: ChallengerConfig = field(default_factory=ChallengerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def identity(self) -> BotIdentity:
        return self.policy.identity

    @classmethod
    def from_yaml(cls, path: str) -> "BotConfig":
        with open(path, "r", encoding="utf-8") as f:
            try:
                cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"{path}: not valid YAML: {e}") from e
        if not isinstance(cfg, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        return cls.from_dict(cfg)

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "BotConfig":
        token = (os.getenv("LICHESS_API_TOKEN") or cfg.get("token") or "").strip()

        bot = _section(cfg, "bot")
        bot_id = (bot.get("bot_id") or "").strip().lower()
        if not bot_id:
            raise ConfigError("bot.bot_id is required")
        matchers = tuple(
            UserMatcher(include=bool(m.get("include", True)), pattern=str(m.get("pattern", "")))
            for m in (bot.get("user_matchers") or [])
        )
        identity = BotIdentity(bot_id=bot_id, matchers=matchers)

        ch = _section(cfg, "challenge")
        tc = _section(ch, "time_constraints")
        defaults = TimeControlConstraint()
        constraints = TimeControlConstraint(
            min_initial_secs=_number(tc, "min_initial_time_secs", defaults.min_initial_secs, int),
            max_initial_secs=_number(tc, "max_initial_time_secs", defaults.max_initial_secs, int),
            min_increment_secs=_number(tc, "min_increment_secs", defaults.min_increment_secs, int),
            max_increment_secs=_number(tc, "max_increment_secs", defaults.max_increment_secs, int),
        )
        variants = tuple(str(v).lower() for v in (ch.get("variants") or ["standard"]))
        policy = ChallengePolicy(
            identity=identity,
            variants=variants,
            rated=str(ch.get("rated", "any")).lower(),
            time_constraints=constraints,
        )

        rl = _section(cfg, "rate_limits")
        rate_limits = RateLimitConfig(
            database=str(rl.get("database") or RateLimitConfig.database),
            max_daily_challenges=_number(rl, "max_daily_challenges", RateLimitConfig.max_daily_challenges, int),
            max_daily_user_challenges=_number(
                rl, "max_daily_user_challenges", RateLimitConfig.max_daily_user_challenges, int
            ),
            excluded=tuple(str(u).lower() for u in (rl.get("excluded") or [])),
            excluded_consume_global=bool(rl.get("excluded_consume_global", True)),
        )

        el = _section(cfg, "event_loop")
        event_loop = EventLoopConfig(
            retry_wait_duration_secs=_number(el, "retry_wait_duration_secs", EventLoopConfig.retry_wait_duration_secs),
            status_poll_gap_secs=_number(el, "status_poll_gap_secs", EventLoopConfig.status_poll_gap_secs),
            max_stream_life_mins=_number(el, "max_stream_life_mins", EventLoopConfig.max_stream_life_mins),
        )

        gf = _section(cfg, "game_function")
        game_function = GameFunctionConfig(
            abort_after_secs=_number(gf, "abort_after_secs", GameFunctionConfig.abort_after_secs),
            max_recursion_depth=_number(gf, "max_recursion_depth", GameFunctionConfig.max_recursion_depth, int),
            invocation_limit_secs=_number(gf, "invocation_limit_secs", GameFunctionConfig.invocation_limit_secs),
            handoff_margin_secs=_number(gf, "handoff_margin_secs", GameFunctionConfig.handoff_margin_secs),
            handoff_delay_secs=_number(gf, "handoff_delay_secs", GameFunctionConfig.handoff_delay_secs),
            retry_wait_duration_secs=event_loop.retry_wait_duration_secs,
        )

        ob = _section(cfg, "opening_book")
        opening_book = OpeningBookConfig(
            path=os.path.expandvars(str(ob.get("path") or "")),
            max_depth=_number(ob, "max_depth", OpeningBookConfig.max_depth, int),
        )

        mc = _section(cfg, "move_computer")
        move_computer = MoveComputerConfig(
            kind=str(mc.get("kind", "engine")).lower(),
            engine_path=(os.getenv("STOCKFISH_PATH") or str(mc.get("engine_path") or "")).strip(),
            threads=_number(mc, "threads", MoveComputerConfig.threads, int, minimum=1),
            hash_mb=_number(mc, "hash_mb", MoveComputerConfig.hash_mb, int, minimum=1),
            move_overhead_ms=_number(mc, "move_overhead_ms", MoveComputerConfig.move_overhead_ms, int),
            syzygy_path=str(mc.get("syzygy_path") or ""),
            url=str(mc.get("url") or ""),
            timeout_secs=_number(mc, "timeout_secs", MoveComputerConfig.timeout_secs),
        )

        cc = _section(cfg, "challenger")
        challenger = ChallengerConfig(
            rated=bool(cc.get("rated", True)),
            challenge_count=_number(cc, "challenge_count", ChallengerConfig.challenge_count, int),
            harder_percentage=_number(cc, "harder_percentage", ChallengerConfig.harder_percentage, int),
            time_limit_options=tuple(_time_limit(o) for o in (cc.get("time_limit_options") or [])),
        )
        if challenger.harder_percentage > 100:
            raise ConfigError("challenger.harder_percentage must be <= 100")

        lg = _section(cfg, "logging")
        logging_cfg = LoggingConfig(
            log_to_file=_env_bool("LOG_TO_FILE", bool(lg.get("log_to_file", False))),
            log_dir=(os.getenv("BOT_LOG_DIR") or str(lg.get("log_dir") or "logs")).strip(),
        )

        return cls(
            token=token,
            policy=policy,
            rate_limits=rate_limits,
            event_loop=event_loop,
            game_function=game_function,
            opening_book=opening_book,
            move_computer=move_computer,
            challenger=challenger,
            logging=logging_cfg,
        )


def load_config(path: str = "config.yml") -> Optional[BotConfig]:
    """Returns None when the file is absent so the launcher can report it."""
    if not os.path.exists(path):
        return None
    return BotConfig.from_yaml(path)
