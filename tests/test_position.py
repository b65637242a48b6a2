from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

import lnr


def test_save_then_load_round_trip(tmp_path: Path) -> None:
    book = str(tmp_path / "novel.epub")
    lnr.save_position(book, 42, 3)
    assert lnr.load_position(book) == lnr.Position(42, 3)
    assert json.loads(Path(book + ".readpos.json").read_text()) == {"scroll": 42, "chapter": 3}


def test_record_keeps_wrap_width(tmp_path: Path) -> None:
    book = str(tmp_path / "novel.epub")
    lnr.save_position(book, 42, 3, 75)
    assert lnr.load_position(book) == lnr.Position(42, 3, 75)
    assert json.loads(Path(lnr.posfile(book)).read_text())["width"] == 75
    Path(lnr.posfile(book)).write_text('{"scroll": 42, "chapter": 3, "width": 0}')
    assert lnr.load_position(book) == lnr.Position(42, 3)


def test_reflow_scroll_follows_the_first_word() -> None:
    words = ["w{}".format(i) for i in range(60)]
    text = " ".join(words)
    old = lnr.build_lines([("c1", "<p>{}</p><p>{}</p>".format(text, text))], width=40)
    new = lnr.build_lines([("c1", "<p>{}</p><p>{}</p>".format(text, text))], width=17)
    for scroll in range(len(old)):
        line = new[lnr.reflow_scroll(old, new, scroll)]
        if old[scroll]:
            assert old[scroll].split()[0] in line.split()
    assert lnr.reflow_scroll(old, new, 0) == 0
    assert lnr.reflow_scroll(old, [], 5) == 0


def test_save_overwrites_previous_record(tmp_path: Path) -> None:
    book = str(tmp_path / "novel.epub")
    lnr.save_position(book, 42, 3)
    lnr.save_position(book, 7, 0)
    assert lnr.load_position(book) == lnr.Position(7, 0)


def test_record_path_is_next_to_book(tmp_path: Path) -> None:
    assert lnr.posfile("/books/a/novel.epub") == "/books/a/novel.epub.readpos.json"


def test_missing_record_is_no_position(tmp_path: Path) -> None:
    assert lnr.load_position(str(tmp_path / "novel.epub")) is None


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[1, 2]",
        '{"chapter": 2}',
        '{"scroll": "12", "chapter": 2}',
        '{"scroll": true, "chapter": 2}',
        "",
    ],
)
def test_corrupt_record_is_no_position(tmp_path: Path, caplog, payload: str) -> None:
    book = str(tmp_path / "novel.epub")
    Path(lnr.posfile(book)).write_text(payload)
    with caplog.at_level(logging.WARNING, logger="lnr"):
        assert lnr.load_position(book) is None
    assert "position record" in caplog.text


def test_record_without_usable_chapter(tmp_path: Path) -> None:
    book = str(tmp_path / "novel.epub")
    Path(lnr.posfile(book)).write_text('{"scroll": 12}')
    assert lnr.load_position(book) == lnr.Position(12, None)
    Path(lnr.posfile(book)).write_text('{"scroll": 12, "chapter": "two"}')
    assert lnr.load_position(book) == lnr.Position(12, None)


def test_unreadable_record_is_no_position(tmp_path: Path) -> None:
    book = str(tmp_path / "novel.epub")
    # a directory where the record should be cannot be opened as a file
    Path(lnr.posfile(book)).mkdir()
    assert lnr.load_position(book) is None


def test_resume_policy() -> None:
    assert not lnr.resumable(None, 100)
    assert not lnr.resumable(lnr.Position(0, 0), 100)
    assert lnr.resumable(lnr.Position(1, 0), 100)
    assert lnr.resumable(lnr.Position(99), 100)
    assert not lnr.resumable(lnr.Position(100), 100)
    assert not lnr.resumable(lnr.Position(-3), 100)
