from __future__ import annotations

import zipfile
from pathlib import Path

import curses
import pytest

CONTAINER = """<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles>
    <rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/>
  </rootfiles>
</container>
"""


def _opf(title: str | None, ids: list[str]) -> str:
    title_xml = f"<dc:title>{title}</dc:title>" if title else ""
    manifest = "\n".join(
        f'<item id="{i}" href="text/{i}.xhtml" media-type="application/xhtml+xml"/>' for i in ids
    )
    spine = "\n".join(f'<itemref idref="{i}"/>' for i in ids)
    return f"""<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="2.0">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">{title_xml}</metadata>
  <manifest>
    <item id="ncx" href="toc.ncx" media-type="application/x-dtbncx+xml"/>
    {manifest}
  </manifest>
  <spine toc="ncx">
    {spine}
  </spine>
</package>
"""


@pytest.fixture
def make_epub(tmp_path: Path):
    """Write an EPUB2 archive from (chapter id, body html) pairs."""

    def _make(chapters, title=None, name="book.epub", skip=()):
        path = tmp_path / name
        ids = [chid for chid, _ in chapters]
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("mimetype", "application/epub+zip")
            zf.writestr("META-INF/container.xml", CONTAINER)
            zf.writestr("OEBPS/content.opf", _opf(title, ids))
            zf.writestr("OEBPS/toc.ncx", "<ncx/>")
            for chid, body in chapters:
                if chid in skip:
                    continue
                zf.writestr(
                    f"OEBPS/text/{chid}.xhtml",
                    f"<html><head><title>{chid}</title></head><body>{body}</body></html>",
                )
        return path

    return _make


class FakeScreen:
    """Stand-in for a curses window that replays key presses."""

    def __init__(self, keys, rows=30, cols=100):
        self.keys = list(keys)
        self.rows = rows
        self.cols = cols
        self.written: list[tuple[int, int, str, int]] = []
        self.clears = 0
        self.log: list[str] = []

    def getmaxyx(self):
        return self.rows, self.cols

    def getch(self):
        if not self.keys:
            raise AssertionError("ran out of key presses")
        key = self.keys.pop(0)
        return ord(key) if isinstance(key, str) else key

    def addstr(self, y, x, text, att=curses.A_NORMAL):
        self.written.append((y, x, text, att))
        self.log.append(text)

    def clear(self):
        self.clears += 1
        self.written = []

    def move(self, y, x):
        pass

    def clrtoeol(self):
        pass

    def refresh(self):
        pass

    def keypad(self, flag):
        pass

    def box(self):
        pass

    def text(self):
        return [t for _, _, t, _ in self.written]


@pytest.fixture
def screen():
    return FakeScreen
