"""Tests for opening book lookups."""

import struct

import chess
import chess.polyglot

from opening_book import (
    PolyglotOpeningBook,
    TableOpeningBook,
    load_opening_book,
    parse_record,
    position_key,
)


def _after(*uci):
    board = chess.Board()
    for u in uci:
        board.push_uci(u)
    return board


def _raw_move(uci: str) -> int:
    mv = chess.Move.from_uci(uci)
    return mv.to_square | (mv.from_square << 6)


class TestTableBook:
    def test_orders_by_frequency_stable_on_ties(self):
        book = TableOpeningBook({position_key(chess.Board()): ["d2d4:5", "e2e4:9", "c2c4:5", "g1f3"]})
        assert book.lookup(chess.Board()) == ["e2e4", "d2d4", "c2c4", "g1f3"]

    def test_key_ignores_move_counters(self):
        board = _after("g1f3", "g8f6", "f3g1", "f6g8")
        book = TableOpeningBook({chess.STARTING_FEN: ["e2e4:1"]})
        assert board.fen() != chess.STARTING_FEN
        assert book.lookup(board) == ["e2e4"]

    def test_unknown_position_is_empty(self):
        book = TableOpeningBook({})
        assert book.lookup(_after("a2a3")) == []

    def test_bad_records_skipped(self):
        book = TableOpeningBook({position_key(chess.Board()): [":4", "e2e4:2"]})
        assert book.lookup(chess.Board()) == ["e2e4"]

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "book.yml"
        path.write_text(f'"{position_key(_after("e2e4"))}":\n  - "e7e5:30"\n  - "c7c5:40"\n', encoding="utf-8")
        book = load_opening_book(str(path))
        assert isinstance(book, TableOpeningBook)
        assert book.lookup(_after("e2e4")) == ["c7c5", "e7e5"]


class TestParseRecord:
    def test_with_frequency(self):
        assert parse_record("e2e4:20") == ("e2e4", 20)

    def test_bare_move(self):
        assert parse_record("e2e4") == ("e2e4", 1)


class TestPolyglotBook:
    def test_weight_then_uci(self, tmp_path):
        key = chess.polyglot.zobrist_hash(chess.Board())
        path = tmp_path / "book.bin"
        with open(path, "wb") as f:
            for uci, weight in (("d2d4", 10), ("e2e4", 10), ("c2c4", 3), ("g1f3", 20)):
                f.write(struct.pack(">QHHI", key, _raw_move(uci), weight, 0))

        book = load_opening_book(str(path))
        try:
            assert isinstance(book, PolyglotOpeningBook)
            assert book.lookup(chess.Board()) == ["g1f3", "d2d4", "e2e4", "c2c4"]
            assert book.lookup(_after("e2e4")) == []
        finally:
            book.close()


class TestLoad:
    def test_no_path(self):
        assert load_opening_book("") is None

    def test_missing_file(self, tmp_path):
        assert load_opening_book(str(tmp_path / "nope.bin")) is None

    def test_unreadable_table(self, tmp_path):
        path = tmp_path / "book.yml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        assert load_opening_book(str(path)) is None
