# errors.py — exception taxonomy shared by the consumer loop and game sessions


class BotError(Exception):
    """Base class for errors raised by the bot itself."""


class ConfigError(BotError):
    """config.yml is missing a value or holds one we cannot use."""


class TransientFeedError(BotError):
    """An event feed dropped or closed; reconnecting is the right response."""


class RemoteCallError(BotError):
    """
    A Lichess request failed after retries. `status_code` is None when no
    HTTP response came back, in which case the call may or may not have landed.
    """

    def __init__(self, desc: str, status_code, cause: Exception):
        super().__init__(f"{desc}: {'HTTP ' + str(status_code) if status_code else 'no response'}: {cause}")
        self.desc = desc
        self.status_code = status_code
        self.cause = cause


class OpponentStall(BotError):
    def __init__(self, game_id: str, silent_secs: float):
        super().__init__(f"no activity in {game_id} for {silent_secs:.0f}s")
        self.game_id = game_id
        self.silent_secs = silent_secs


class RecursionBudgetExceeded(BotError):
    def __init__(self, game_id: str, depth: int, max_depth: int):
        super().__init__(f"{game_id}: continuation depth {depth} > {max_depth}")
        self.game_id = game_id
        self.depth = depth
        self.max_depth = max_depth


class NotAParticipant(BotError, ValueError):
    """The game stream belongs to a game the bot is not playing."""


class MoveComputerFailure(BotError):
    """The move computer errored, timed out or answered with an illegal move."""


class MoveRejected(BotError):
    """
    The server refused a move we submitted. Legality is checked before
    submission, so this is never retried.
    """

    def __init__(self, game_id: str, uci: str, fen: str, cause: Exception):
        super().__init__(f"{game_id}: server rejected {uci} in {fen}: {cause}")
        self.game_id = game_id
        self.uci = uci
        self.fen = fen
        self.cause = cause
