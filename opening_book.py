# opening_book.py — position → ordered candidate book moves
from __future__ import annotations

import json
import os
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

import chess
import chess.polyglot
import yaml

from botlog import log, log_exc

MOVE_FREQ_SEPARATOR = ":"


class OpeningBook(Protocol):
    def lookup(self, board: chess.Board) -> List[str]:
        """Candidate moves (UCI) for this position, best first. Empty when out of book."""
        ...


def position_key(board: chess.Board) -> str:
    """Placement, side to move and castling rights; move clocks and en passant are left out."""
    return " ".join(board.fen().split()[:3])


def parse_record(record: str):
    """'e2e4:20' -> ('e2e4', 20). A bare move counts as frequency 1."""
    parts = str(record).split(MOVE_FREQ_SEPARATOR)
    mv = parts[0].strip()
    if not mv:
        raise ValueError(f"Cannot parse move from {record!r}")
    freq = int(parts[1]) if len(parts) > 1 and parts[1].strip() else 1
    return mv, freq


class TableOpeningBook:
    """Mapping of position key to 'uci:freq' records, ordered by frequency (stable on ties)."""

    def __init__(self, table: Mapping[str, Sequence[str]]):
        self._table: Dict[str, List[str]] = {}
        for key, records in table.items():
            parsed = []
            for rec in records or []:
                try:
                    parsed.append(parse_record(rec))
                except ValueError as e:
                    log(f"Skipping book record {rec!r} at {key}: {e}", "📚")
            parsed.sort(key=lambda r: -r[1])
            self._table[" ".join(str(key).split()[:3])] = [mv for mv, _ in parsed]

    @classmethod
    def from_file(cls, path: str) -> "TableOpeningBook":
        with open(path, "r", encoding="utf-8") as f:
            if path.lower().endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping of position -> moves")
        return cls(data or {})

    def __len__(self):
        return len(self._table)

    def lookup(self, board: chess.Board) -> List[str]:
        return list(self._table.get(position_key(board), []))


class PolyglotOpeningBook:
    """Polyglot .bin book; heaviest entry first, ties broken by UCI."""

    def __init__(self, path: str):
        self.path = path
        self._reader = chess.polyglot.open_reader(path)

    def lookup(self, board: chess.Board) -> List[str]:
        weights: Dict[str, int] = {}
        for entry in self._reader.find_all(board):
            u = entry.move.uci()
            weights[u] = max(weights.get(u, 0), int(entry.weight))
        return [u for u, _ in sorted(weights.items(), key=lambda kv: (-kv[1], kv[0]))]

    def close(self):
        self._reader.close()


def load_opening_book(path: str) -> Optional[OpeningBook]:
    if not path:
        return None
    if not os.path.exists(path):
        log(f"Opening book {path} not found; playing without a book.", "📚")
        return None
    try:
        if path.lower().endswith(".bin"):
            book = PolyglotOpeningBook(path)
        else:
            book = TableOpeningBook.from_file(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        log_exc(f"load opening book {path}", e)
        return None
    log(f"Opening book loaded: {path}", "📚")
    return book
