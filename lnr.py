#!/usr/bin/env python3
"""\
Usages:
    lnr             choose a book found under current directory
    lnr EPUBFILE    read EPUBFILE
    lnr DIR         choose a book found under DIR

Options:
    -d              dump flattened book text
    --log FILE      write debug log to FILE
    -v, --version   print version
    -h, --help      print short, long help

Key Binding:
    Quit             : q
    Cancel (quit)    : ESC
    Scroll down      : DOWN      j
    Scroll up        : UP        k
    Page down        : PGDN      RIGHT   SPC     l
    Page up          : PGUP      LEFT    h
    Next chapter     : n
    Prev chapter     : p
    Next choice      : TAB
    Take choice      : ENTER
    First book       : HOME      g
    Last book        : END       G
"""


__version__ = "0.1.0"
__license__ = "MIT"


import curses
import json
import logging
import math
import os
import re
import shutil
import sys
import textwrap
import xml.etree.ElementTree as ET
import zipfile
from dataclasses import dataclass, replace
from html.parser import HTMLParser
from typing import Optional
from urllib.parse import unquote


# key bindings
SCROLL_DOWN = {curses.KEY_DOWN, ord("j")}
SCROLL_UP = {curses.KEY_UP, ord("k")}
PAGE_DOWN = {curses.KEY_NPAGE, ord("l"), ord(" "), curses.KEY_RIGHT}
PAGE_UP = {curses.KEY_PPAGE, ord("h"), curses.KEY_LEFT}
CH_NEXT = {ord("n")}
CH_PREV = {ord("p")}
# book list
LIST_TOP = {curses.KEY_HOME, ord("g")}
LIST_END = {curses.KEY_END, ord("G")}
CYCLE = {9}
FOLLOW = {10, 13, curses.KEY_ENTER}
QUIT = {ord("q"), 3, 304}
CANCEL = {27}
YES = {ord("y"), ord("Y")}
NO = {ord("n"), ord("N")}


# navigation commands
CMD_SCROLL_UP = "scroll-up"
CMD_SCROLL_DOWN = "scroll-down"
CMD_PREV_PAGE = "prev-page"
CMD_NEXT_PAGE = "next-page"
CMD_PREV_CHAPTER = "prev-chapter"
CMD_NEXT_CHAPTER = "next-chapter"
CMD_QUIT = "quit"
# returned by select_command when the screen has to be redrawn
RESIZE = "resize"

LABELS = {
    CMD_SCROLL_UP: "[k] Scroll up",
    CMD_SCROLL_DOWN: "[j] Scroll down",
    CMD_PREV_PAGE: "[h] Prev page",
    CMD_NEXT_PAGE: "[l] Next page",
    CMD_PREV_CHAPTER: "[p] Prev chapter",
    CMD_NEXT_CHAPTER: "[n] Next chapter",
    CMD_QUIT: "[q] Quit",
}
KEYS = {
    CMD_SCROLL_UP: SCROLL_UP,
    CMD_SCROLL_DOWN: SCROLL_DOWN,
    CMD_PREV_PAGE: PAGE_UP,
    CMD_NEXT_PAGE: PAGE_DOWN,
    CMD_PREV_CHAPTER: CH_PREV,
    CMD_NEXT_CHAPTER: CH_NEXT,
    CMD_QUIT: QUIT,
}


# page geometry and chapter heuristics, see Settings
PAGE_WIDTH = 80
PAGE_HEIGHT = 20
HEADING_WINDOW = 5
HEADING_MIN_TEXT = 100
TOC_LOOKAHEAD = 10
# prev-chapter is only offered above this marker index
PREV_CHAPTER_MIN = 1
POSFILE_SUFFIX = ".readpos.json"
MIN_COLS = 22
MIN_ROWS = 12
# box borders, two status lines and the menu
CHROME_ROWS = 5

HEADING = re.compile(r"^chapter\s+(\d+)", re.IGNORECASE)


logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class ReaderError(Exception):
    pass


class ContentError(ReaderError):
    """Book file or one of its chapters cannot be read."""


class PositionError(ReaderError):
    """Reading position cannot be written."""


@dataclass(frozen=True)
class Settings:
    width: int = PAGE_WIDTH
    height: int = PAGE_HEIGHT
    heading_window: int = HEADING_WINDOW
    heading_min_text: int = HEADING_MIN_TEXT
    toc_lookahead: int = TOC_LOOKAHEAD
    prev_chapter_min: int = PREV_CHAPTER_MIN


@dataclass(frozen=True)
class Marker:
    line: int
    chapter: int


@dataclass(frozen=True)
class Position:
    scroll: int
    chapter: Optional[int] = None
    # wrap width the scroll was counted at
    width: Optional[int] = None


@dataclass(frozen=True)
class Session:
    """
    Data model for one reading session.

    `chapter` is derived from `scroll` through current_chapter()
    after every transition, only Navigator.restore() takes it
    from a saved record instead.

    `last` is the previously chosen command and is offered as
    the default choice of the next prompt. `done` is set by quit.
    """

    scroll: int = 0
    chapter: int = 0
    last: Optional[str] = None
    done: bool = False


class Epub:
    NS = {
        "OPF": "http://www.idpf.org/2007/opf",
        "CONT": "urn:oasis:names:tc:opendocument:xmlns:container",
        "DC": "http://purl.org/dc/elements/1.1/",
    }

    def __init__(self, fileepub):
        self.path = os.path.abspath(fileepub)
        try:
            self.file = zipfile.ZipFile(fileepub, "r")
        except (OSError, zipfile.BadZipFile) as e:
            raise ContentError("{} is not a readable epub: {}".format(fileepub, e)) from e
        try:
            cont = ET.parse(self.file.open("META-INF/container.xml"))
            self.rootfile = cont.find(
                "CONT:rootfiles/CONT:rootfile",
                self.NS
            ).attrib["full-path"]
        except (KeyError, AttributeError, ET.ParseError) as e:
            self.file.close()
            raise ContentError("{} has no usable META-INF/container.xml".format(fileepub)) from e
        self.rootdir = os.path.dirname(self.rootfile)\
            + "/" if os.path.dirname(self.rootfile) != "" else ""

        self.title = None
        # (idref, path in archive) in reading order
        self.contents = []

    def initialize(self):
        try:
            cont = ET.fromstring(self.file.open(self.rootfile).read())
        except (KeyError, ET.ParseError) as e:
            raise ContentError("{}: unreadable package document {}".format(self.path, self.rootfile)) from e

        manifest = {}
        for i in cont.findall("OPF:manifest/*", self.NS):
            # EPUB2 ncx and EPUB3 nav are not part of the text
            if i.get("media-type") != "application/x-dtbncx+xml"\
               and "nav" not in (i.get("properties") or "").split():
                manifest[i.get("id")] = i.get("href")

        for i in cont.findall("OPF:spine/*", self.NS):
            idref = i.get("idref")
            if idref in manifest:
                self.contents.append((idref, self.rootdir + unquote(manifest.pop(idref))))

        for i in cont.findall("OPF:metadata/DC:title", self.NS):
            if i.text is not None and i.text.strip() != "":
                self.title = i.text.strip()
                break

    def chapters(self):
        for idref, path in self.contents:
            try:
                content = self.file.read(path)
            except (KeyError, zipfile.BadZipFile) as e:
                raise ContentError("chapter {} ({}) cannot be read from {}".format(idref, path, self.path)) from e
            try:
                markup = content.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ContentError("chapter {} ({}) is not valid utf-8".format(idref, path)) from e
            yield idref, markup

    def close(self):
        self.file.close()


class HTMLtoParagraphs(HTMLParser):
    para = {
        "p", "div", "li", "dt", "dd", "q", "blockquote", "pre", "tr",
        "section", "article", "header", "footer", "figcaption", "br", "hr"
    }
    hide = {"script", "style", "head"}

    def __init__(self):
        HTMLParser.__init__(self)
        self.text = [""]
        self.hidden = 0

    def handle_starttag(self, tag, attrs):
        if re.match("h[1-6]$", tag) is not None or tag in self.para:
            self.text.append("")
        elif tag in self.hide:
            self.hidden += 1

    def handle_endtag(self, tag):
        if re.match("h[1-6]$", tag) is not None or tag in self.para:
            self.text.append("")
        elif tag in self.hide:
            self.hidden = max(self.hidden - 1, 0)

    def handle_data(self, raw):
        if raw and self.hidden == 0:
            self.text[-1] += raw

    def get_paragraphs(self):
        paras = []
        for block in self.text:
            # a blank line inside a block also ends a paragraph
            for i in re.split(r"\n[^\S\n]*\n", block):
                i = re.sub(r"\s+", " ", i).strip()
                if i != "":
                    paras.append(i)
        return paras


def extract_paragraphs(markup):
    parser = HTMLtoParagraphs()
    parser.feed(markup.replace("\r\n", "\n").replace("\r", "\n"))
    parser.close()
    return parser.get_paragraphs()


def wrap_paragraph(para, width):
    # a word longer than width keeps a line of its own
    return textwrap.wrap(
        para, width,
        break_long_words=False,
        break_on_hyphens=False
    )


def build_lines(chapters, title=None, width=PAGE_WIDTH):
    """
    Flatten (chapter id, markup) pairs into display lines of at
    most `width` chars, one blank line after every paragraph.
    """
    lines = []
    if title:
        if len(title) > width:
            lines += [title, ""]
        else:
            lines += [title.rjust((width + len(title)) // 2), ""]

    for chid, markup in chapters:
        paras = extract_paragraphs(markup)
        if paras == []:
            logger.debug("chapter %s has no text", chid)
        for para in paras:
            lines += wrap_paragraph(para, width) + [""]

    while lines != [] and lines[-1].strip() == "":
        lines.pop()
    return lines


def load_book(path, width=PAGE_WIDTH):
    epub = Epub(path)
    try:
        epub.initialize()
        lines = build_lines(epub.chapters(), epub.title, width)
    finally:
        epub.close()
    logger.info(
        "opened %s: %d chapters, %d lines at width %d",
        epub.path, len(epub.contents), len(lines), width
    )
    return epub.title, lines


def is_heading(line):
    return HEADING.match(line) is not None


def find_markers(lines, settings=Settings()):
    """
    Chapter headings followed by enough prose to not be a
    table of contents entry, in buffer order.
    """
    markers = []
    for n, i in enumerate(lines):
        match = HEADING.match(i)
        if match is None:
            continue
        following = lines[n+1:n+1+settings.heading_window]
        if sum(len(j.strip()) for j in following) > settings.heading_min_text:
            markers.append(Marker(n, int(match.group(1))))
    return markers


def current_chapter(markers, scroll):
    idx = 0
    for n, i in enumerate(markers):
        if i.line <= scroll:
            idx = n
        else:
            break
    return idx


def is_plausible(lines, markers, k, settings=Settings()):
    start = markers[k].line + 1
    return not any(is_heading(i) for i in lines[start:start+settings.toc_lookahead])


def pgup(pos, winhi):
    if pos >= winhi:
        return pos - winhi
    else:
        return 0


def pgdn(pos, tot, winhi):
    if pos + winhi <= tot - winhi:
        return pos + winhi
    else:
        pos = tot - winhi
        if pos < 0:
            return 0
        return pos


def pgend(tot, winhi):
    if tot - winhi >= 0:
        return tot - winhi
    else:
        return 0


class Navigator:
    """
    Transition rules over one immutable line buffer.

    Nothing here is mutated after construction, every query
    takes a Session and transitions return a new one.
    """

    def __init__(self, lines, markers, settings=Settings()):
        self.lines = lines
        self.markers = markers
        self.settings = settings

    @property
    def total_lines(self):
        return len(self.lines)

    @property
    def max_scroll(self):
        return pgend(len(self.lines), self.settings.height)

    @property
    def total_pages(self):
        return math.ceil(len(self.lines) / self.settings.height)

    def page(self, state):
        return state.scroll // self.settings.height

    def legal_commands(self, state):
        page = self.page(state)
        legal = []
        if state.scroll > 0:
            legal.append(CMD_SCROLL_UP)
        if state.scroll < self.max_scroll:
            legal.append(CMD_SCROLL_DOWN)
        if page > 0:
            legal.append(CMD_PREV_PAGE)
        if page < self.total_pages - 1:
            legal.append(CMD_NEXT_PAGE)
        if state.chapter > self.settings.prev_chapter_min:
            legal.append(CMD_PREV_CHAPTER)
        if state.chapter < len(self.markers) - 1:
            legal.append(CMD_NEXT_CHAPTER)
        legal.append(CMD_QUIT)
        return tuple(legal)

    def seek(self, scroll, last=None):
        scroll = min(max(scroll, 0), self.max_scroll)
        return Session(scroll, current_chapter(self.markers, scroll), last)

    def jump(self, state, step):
        """
        Line of the nearest plausible marker before (step -1) or
        after (step 1) the current chapter, or the current scroll
        when there is none.
        """
        k = state.chapter + step
        while 0 <= k < len(self.markers):
            if is_plausible(self.lines, self.markers, k, self.settings):
                return self.markers[k].line
            k += step
        logger.debug(
            "no plausible chapter %s marker %d",
            "after" if step > 0 else "before", state.chapter
        )
        return state.scroll

    def apply(self, state, command):
        if command not in self.legal_commands(state):
            return state

        if command == CMD_QUIT:
            return replace(state, last=command, done=True)

        scroll = state.scroll
        if command == CMD_SCROLL_UP:
            scroll -= 1
        elif command == CMD_SCROLL_DOWN:
            scroll += 1
        elif command == CMD_PREV_PAGE:
            scroll = pgup(scroll, self.settings.height)
        elif command == CMD_NEXT_PAGE:
            scroll = pgdn(scroll, len(self.lines), self.settings.height)
        elif command == CMD_PREV_CHAPTER:
            scroll = self.jump(state, -1)
        elif command == CMD_NEXT_CHAPTER:
            scroll = self.jump(state, 1)
        return self.seek(scroll, last=command)

    def restore(self, position):
        scroll = min(max(position.scroll, 0), self.max_scroll)
        chapter = position.chapter
        if chapter is None or not 0 <= chapter < max(len(self.markers), 1):
            chapter = current_chapter(self.markers, scroll)
        return Session(scroll, chapter)


def posfile(path):
    return path + POSFILE_SUFFIX


def isint(value):
    return isinstance(value, int) and not isinstance(value, bool)


def load_position(path):
    statefile = posfile(path)
    if not os.path.exists(statefile):
        return None
    try:
        with open(statefile, "r") as f:
            state = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("ignoring unreadable position record %s: %s", statefile, e)
        return None

    if not isinstance(state, dict) or not isint(state.get("scroll")):
        logger.warning("ignoring malformed position record %s", statefile)
        return None
    chapter = state.get("chapter")
    width = state.get("width")
    position = Position(
        state["scroll"],
        chapter if isint(chapter) else None,
        width if isint(width) and width > 0 else None
    )
    logger.debug("loaded %s from %s", position, statefile)
    return position


def save_position(path, scroll, chapter, width=None):
    statefile = posfile(path)
    state = {"scroll": scroll, "chapter": chapter}
    if width is not None:
        state["width"] = width
    with open(statefile, "w") as f:
        json.dump(state, f, indent=4)
    logger.info("saved scroll %d chapter %d to %s", scroll, chapter, statefile)


def resumable(position, total_lines):
    return position is not None and 0 < position.scroll < total_lines


def reflow_scroll(old_lines, new_lines, scroll):
    """
    Line of `new_lines` holding the first word shown at line
    `scroll` of `old_lines`, both wraps of the same text.
    """
    words = sum(len(i.split()) for i in old_lines[:scroll])
    count = 0
    for n, i in enumerate(new_lines):
        count += len(i.split())
        if count > words:
            return n
    return max(len(new_lines) - 1, 0)


def box_page(lines, width):
    boxed = ["┌" + "─" * (width + 2) + "┐"]
    for i in lines:
        boxed.append("│ " + i.ljust(width) + " │")
    boxed.append("└" + "─" * (width + 2) + "┘")
    return boxed


def status_lines(nav, state):
    status = []
    if nav.markers:
        marker = nav.markers[state.chapter]
        status.append("Chapter {} (Line {} of {}, Chapter {} of {})".format(
            marker.chapter,
            marker.line + 1, nav.total_lines,
            state.chapter + 1, len(nav.markers)))
    status.append("Page {} / {} (Line {} of {})".format(
        nav.page(state) + 1, max(nav.total_pages, 1),
        state.scroll + 1, nav.total_lines))
    return status


def menu_entries(commands):
    return [(i, LABELS[i]) for i in commands]


def fit_settings(settings, rows, cols):
    # box lines are width + 4 chars and the last column stays empty
    return replace(
        settings,
        width=max(1, min(settings.width, cols - 5)),
        height=max(1, min(settings.height, rows - CHROME_ROWS))
    )


def safe_curs_set(state):
    try:
        curses.curs_set(state)
    except curses.error:
        return


def draw_page(stdscr, nav, state):
    rows, cols = stdscr.getmaxyx()
    page = nav.lines[state.scroll:state.scroll + nav.settings.height]
    screen = box_page(page, nav.settings.width) + status_lines(nav, state)
    stdscr.clear()
    # try except to be more flexible on terminal resize
    for n, i in enumerate(screen[:rows-1]):
        try:
            stdscr.addstr(n, 0, i[:cols-1])
        except curses.error:
            pass
    stdscr.refresh()


def draw_menu(stdscr, entries, index):
    rows, cols = stdscr.getmaxyx()
    x = 0
    try:
        stdscr.move(rows-1, 0)
        stdscr.clrtoeol()
        for n, (_, label) in enumerate(entries):
            if x + len(label) >= cols:
                break
            att = curses.A_REVERSE if n == index else curses.A_NORMAL
            stdscr.addstr(rows-1, x, label, att)
            x += len(label) + 2
    except curses.error:
        pass
    stdscr.refresh()


def select_command(stdscr, entries, default=None):
    """
    Offer `entries` as a one line menu and return the chosen
    command, RESIZE when the terminal changed size, or None
    when cancelled.
    """
    cmds = [i[0] for i in entries]
    index = cmds.index(default) if default in cmds else 0
    while True:
        draw_menu(stdscr, entries, index)
        k = stdscr.getch()
        if k in CANCEL:
            return None
        elif k in FOLLOW:
            return cmds[index]
        elif k in CYCLE:
            index = (index + 1) % len(cmds)
        elif k == curses.KEY_RESIZE:
            return RESIZE
        else:
            for i in cmds:
                if k in KEYS[i]:
                    return i


def confirm(stdscr, message, default=True):
    prompt = message + (" [Y/n] " if default else " [y/N] ")
    while True:
        rows, cols = stdscr.getmaxyx()
        stdscr.clear()
        try:
            stdscr.addstr(rows-1, 0, prompt[:cols-1], curses.A_REVERSE)
        except curses.error:
            pass
        stdscr.refresh()
        k = stdscr.getch()
        if k in YES:
            return True
        elif k in NO:
            return False
        elif k in FOLLOW:
            return default
        elif k in CANCEL|QUIT:
            return False


def choice_win(stdscr, title, entries, index=0):
    rows, cols = stdscr.getmaxyx()
    hi, wi = rows - 4, cols - 4
    Y, X = 2, 2
    win = curses.newwin(hi, wi, Y, X)
    win.box()
    win.keypad(True)
    win.addstr(1, 2, title[:wi-4])
    win.addstr(2, 2, "-" * min(len(title), wi-4))

    padhi = hi - 5
    y = 0
    key = 0
    while True:
        if key in SCROLL_UP:
            index = max(index - 1, 0)
        elif key in SCROLL_DOWN:
            index = min(index + 1, len(entries) - 1)
        elif key in PAGE_UP:
            index = pgup(index, padhi)
        elif key in PAGE_DOWN:
            index = min(index + padhi, len(entries) - 1)
        elif key in LIST_TOP:
            index = 0
        elif key in LIST_END:
            index = len(entries) - 1
        elif key in FOLLOW:
            return index
        elif key in QUIT|CANCEL:
            return None
        elif key == curses.KEY_RESIZE:
            stdscr.clear()
            stdscr.refresh()
            return choice_win(stdscr, title, entries, index)

        while index not in range(y, y+padhi):
            if index < y:
                y -= 1
            else:
                y += 1

        for n in range(padhi):
            row = y + n
            if row < len(entries):
                pre = ">> " if row == index else "   "
                att = curses.A_REVERSE if row == index else curses.A_NORMAL
                win.addstr(4+n, 2, (pre + entries[row])[:wi-6].ljust(wi-6), att)
            else:
                win.addstr(4+n, 2, " " * (wi-6))
        win.refresh()
        key = win.getch()


def reader(stdscr, path, settings=Settings()):
    saved = load_position(path)
    # keep the width the position was saved at if it still fits
    if saved is not None and saved.width is not None\
       and saved.width <= settings.width:
        settings = replace(settings, width=saved.width)

    _, lines = load_book(path, settings.width)
    if saved is not None and saved.width not in (None, settings.width):
        _, old = load_book(path, saved.width)
        logger.info("rewrapping saved position from width %d to %d", saved.width, settings.width)
        saved = Position(reflow_scroll(old, lines, saved.scroll))
    markers = find_markers(lines, settings)
    nav = Navigator(lines, markers, settings)
    logger.info("%d chapter markers in %s", len(markers), path)

    state = Session()
    if resumable(saved, nav.total_lines) and confirm(
        stdscr,
        "Continue from where you left off? (Line {})".format(saved.scroll + 1)
    ):
        state = nav.restore(saved)

    while not state.done:
        draw_page(stdscr, nav, state)
        command = select_command(
            stdscr,
            menu_entries(nav.legal_commands(state)),
            state.last
        )
        if command is None:
            command = CMD_QUIT
        state = nav.apply(state, command)

    try:
        save_position(path, state.scroll, state.chapter, settings.width)
    except OSError as e:
        raise PositionError("Could not save reading position: {}".format(e)) from e
    return state


def preread(stdscr, files):
    stdscr.keypad(True)
    safe_curs_set(0)
    stdscr.clear()

    if len(files) > 1:
        idx = choice_win(
            stdscr, "Select a book to read",
            [os.path.basename(i) for i in files]
        )
        if idx is None:
            return None
        file = files[idx]
    else:
        file = files[0]

    rows, cols = stdscr.getmaxyx()
    stdscr.clear()
    stdscr.addstr(rows-1, 0, "Loading...")
    stdscr.refresh()

    return reader(stdscr, os.path.abspath(file), fit_settings(Settings(), rows, cols))


def list_epub_files(directory):
    found = []
    for root, dirs, files in os.walk(directory):
        dirs.sort()
        for i in sorted(files):
            if os.path.splitext(i)[1].lower() == ".epub":
                found.append(os.path.join(root, i))
    return found


def dump_book(file):
    _, lines = load_book(file)
    for i in lines:
        sys.stdout.buffer.write((i+"\n").encode("utf-8"))


def main(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)

    if len({"-h", "--help"} & set(args)) != 0:
        hlp = __doc__.rstrip()
        if "-h" in args:
            hlp = re.search("(\n|.)*(?=\n\nKey)", hlp).group()
        print(hlp)
        sys.exit()

    if len({"-v", "--version", "-V"} & set(args)) != 0:
        print(__version__)
        print(__license__, "License")
        sys.exit()

    if "--log" in args:
        n = args.index("--log")
        if n + 1 >= len(args):
            sys.exit("ERROR: --log needs a FILE.")
        logging.basicConfig(
            filename=args[n+1],
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )
        del args[n:n+2]

    if "-d" in args:
        args.remove("-d")
        dump = True
    else:
        dump = False

    target = args[0] if args != [] else os.getcwd()
    if os.path.isfile(target):
        files = [target]
    elif os.path.isdir(target):
        files = list_epub_files(target)
        if files == []:
            sys.exit("ERROR: Found no EPUB files under {}.".format(target))
    else:
        print(re.search("(\n|.)*(?=\n\nOptions)", __doc__).group())
        sys.exit("ERROR: No such file or directory: {}".format(target))

    try:
        if dump:
            if len(files) != 1:
                sys.exit("ERROR: -d needs a single EPUBFILE.")
            dump_book(files[0])
        else:
            termc, termr = shutil.get_terminal_size()
            if termc < MIN_COLS or termr < MIN_ROWS:
                sys.exit("ERR: Screen was too small (min {}cols x {}rows).".format(MIN_COLS, MIN_ROWS))
            curses.wrapper(preread, files)
    except ReaderError as e:
        sys.exit("ERR: {}".format(e))


if __name__ == "__main__":
    main()
