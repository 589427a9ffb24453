#!/usr/bin/env python3
# run_bot.py — launcher: account event stream, single session resume, outgoing challenges
import argparse
import sys

from bot_config import BotConfig, load_config
from botlog import configure, log, log_exc
from challenger import Challenger
from dispatcher import ContinuationToken, EmitDispatcher, ThreadDispatcher
from errors import ConfigError
from event_stream import EventStreamConsumer
from game_session import GameSession
from lichess_gateway import LichessGateway
from move_computer import build_move_computer
from opening_book import load_opening_book
from rate_limiter import RateLimiter, SqliteCounterStore


class Runtime:
    """Shared wiring for every subcommand: one gateway, one book, a move computer per session."""

    def __init__(self, cfg: BotConfig, gateway: LichessGateway = None):
        if not cfg.token:
            raise ConfigError("No API token: set LICHESS_API_TOKEN or 'token' in config.yml")
        self.cfg = cfg
        self.gateway = gateway or LichessGateway.from_token(cfg.token)
        self.book = load_opening_book(cfg.opening_book.path)
        self.dispatcher = ThreadDispatcher(self.run_session, delay_secs=cfg.game_function.handoff_delay_secs)

    def check_account(self):
        account = self.gateway.account_id()
        if account and account != self.cfg.identity.bot_id:
            log(f"Token belongs to {account} but bot.bot_id is {self.cfg.identity.bot_id}", "⚠️")

    def run_session(self, token: ContinuationToken, dispatcher=None):
        computer = build_move_computer(self.cfg.move_computer)
        try:
            session = GameSession(
                bot_id=self.cfg.identity.bot_id,
                gateway=self.gateway,
                move_computer=computer,
                dispatcher=dispatcher or self.dispatcher,
                config=self.cfg.game_function,
                opening_book=self.book,
                book_max_depth=self.cfg.opening_book.max_depth,
            )
            return session.run(token)
        finally:
            computer.close()


def cmd_stream(rt: Runtime, args) -> int:
    cfg = rt.cfg
    limiter = RateLimiter(SqliteCounterStore(cfg.rate_limits.database), cfg.rate_limits)
    rt.check_account()
    while True:
        consumer = EventStreamConsumer(cfg.policy, rt.gateway, limiter, rt.dispatcher, cfg.event_loop)
        try:
            consumer.run()
        except KeyboardInterrupt:
            consumer.request_stop()
            log("Shutting down by user request; waiting for running games.", "👋")
            rt.dispatcher.wait_idle()
            return 0
        if not args.restart:
            break
        log("Starting the next event stream lifetime.", "🔁")
    if rt.dispatcher.active_count():
        log(f"Waiting for {rt.dispatcher.active_count()} running game(s) to finish…", "⏳")
    rt.dispatcher.wait_idle()
    return 0


def cmd_resume(rt: Runtime, args) -> int:
    try:
        token = ContinuationToken.from_json(args.token)
    except ValueError as e:
        print(f"[run_bot] Bad continuation token: {e}")
        return 2
    outcome = rt.run_session(token, dispatcher=EmitDispatcher())
    return 1 if outcome.forfeited else 0


def cmd_challenge(rt: Runtime, args) -> int:
    cfg = rt.cfg
    challenger = Challenger(cfg.identity.bot_id, rt.gateway, cfg.challenger, cfg.policy.time_constraints)
    if args.user:
        sent = challenger.specific(args.user, args.limit, args.increment, repeat=args.repeat)
        return 0 if sent else 1
    return 0 if challenger.random_batch() else 1


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Lichess bot with bounded-duration game sessions")
    ap.add_argument("--config", default="config.yml")
    sub = ap.add_subparsers(dest="command", required=True)

    stream = sub.add_parser("stream", help="consume the account event stream for one lifetime")
    stream.add_argument("--restart", action="store_true", help="start a new lifetime whenever one ends")

    resume = sub.add_parser("resume", help="run one game session invocation from a continuation token")
    resume.add_argument("--token", required=True, help='e.g. \'{"gameId":"abcd1234","depth":1,"elapsedSecs":840}\'')

    challenge = sub.add_parser("challenge", help="send outgoing challenges")
    challenge.add_argument("--user", help="challenge this user instead of a random batch of online bots")
    challenge.add_argument("--limit", type=int, default=180, help="initial clock in seconds (with --user)")
    challenge.add_argument("--increment", type=int, default=2, help="increment in seconds (with --user)")
    challenge.add_argument("--repeat", type=int, default=1)
    return ap


COMMANDS = {"stream": cmd_stream, "resume": cmd_resume, "challenge": cmd_challenge}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"[run_bot] {args.config}: {e}")
        return 2
    if cfg is None:
        print(f"[run_bot] Could not open {args.config}.")
        return 2
    configure(cfg.logging.log_to_file, cfg.logging.log_dir)
    try:
        return COMMANDS[args.command](Runtime(cfg), args)
    except ConfigError as e:
        print(f"[run_bot] {e}")
        return 2
    except KeyboardInterrupt:
        log("Shutting down by user request.", "👋")
        return 0
    except Exception as e:
        log_exc("MAIN FATAL", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
