#!/usr/bin/env python3
import functools
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field, fields
from typing import List, Optional, Tuple

import pynvim

logger = logging.getLogger("marks_popup")

# Native jump-to-mark prefixes: exact position and start of line.
PREFIXES = ("'", "`")
POSITIONS = (None, "cursor", "left", "right")
NO_MARKS = "no marks"

_MARK_NAME_RE = re.compile(r"[a-zA-Z0-9]")
_perf_enabled = False


def deep_merge(base: dict, override: dict) -> dict:
    """Return a copy of base with override merged in, recursing into dicts."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass(frozen=True)
class Config:
    """Configuration for the marks popup."""

    width: int = field(default=30, metadata={"opt": "width"})
    max_height: int = field(default=10, metadata={"opt": "maxHeight"})
    offset_x: int = field(default=1, metadata={"opt": "offsetX"})
    offset_y: int = field(default=1, metadata={"opt": "offsetY"})
    position: Optional[str] = field(default=None, metadata={"opt": "position"})
    border: str = field(default="rounded", metadata={"opt": "border"})
    debug: bool = field(default=False, metadata={"opt": "debug"})
    perf: bool = field(default=False, metadata={"opt": "perf"})

    def to_options(self) -> dict:
        return {f.metadata["opt"]: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_options(cls, opts: Optional[dict] = None) -> "Config":
        """Build a config from user options, keeping defaults for omitted keys.

        Unknown keys are ignored. Integer options are coerced so that values
        coming from vimscript floats or strings still work.
        """
        merged = deep_merge(cls().to_options(), opts or {})
        kwargs = {}
        for f in fields(cls):
            raw = merged[f.metadata["opt"]]
            if f.type is int:
                try:
                    raw = int(raw)
                except (TypeError, ValueError):
                    logger.warning(
                        f"Invalid {f.metadata['opt']} {raw!r}, using {f.default}"
                    )
                    raw = f.default
            elif f.type is bool:
                raw = bool(raw)
            kwargs[f.name] = raw

        if kwargs["position"] not in POSITIONS:
            logger.warning(f"Unknown position {kwargs['position']!r}, using cursor")
            kwargs["position"] = None
        return cls(**kwargs)

    @classmethod
    def from_nvim(cls, nvim, opts: Optional[dict] = None) -> "Config":
        """Load configuration from g:marks_popup, then apply opts on top."""
        base = nvim.eval("get(g:, 'marks_popup', {})") or {}
        return cls.from_options(deep_merge(dict(base), opts or {}))


def setup_logging(config: Config):
    """Initialize logging from the debug and perf options"""
    global _perf_enabled
    _perf_enabled = config.perf

    if not (config.debug or config.perf):
        logger.disabled = True
        return

    logger.disabled = False
    logger.setLevel(logging.DEBUG)
    if not logger.handlers:
        handler = logging.FileHandler(os.path.expanduser("~/marks_popup.log"))
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(handler)


def perf_timer(func_name=None):
    """Performance timing decorator that only logs when perf is enabled"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not _perf_enabled:
                return func(*args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            result = func(*args, **kwargs)
            end_time = time.perf_counter()

            logger.info(f"{name} took: {end_time - start_time:.3f} seconds")
            return result

        return wrapper

    return decorator


@dataclass(frozen=True)
class MarkRecord:
    name: str
    file: str
    line: int  # 1-based
    column: int  # 1-based
    content: str


@dataclass(frozen=True)
class Geometry:
    row: int
    col: int
    width: int
    height: int


class Host(ABC):
    """Editor capabilities the popup needs."""

    @abstractmethod
    def current_buffer(self):
        """Handle of the buffer in the current window"""
        pass

    @abstractmethod
    def buffer_name(self, buf) -> str:
        pass

    @abstractmethod
    def is_normal_buffer(self, buf) -> bool:
        """True for ordinary file buffers, false for special buffer types"""
        pass

    @abstractmethod
    def buffer_is_valid(self, buf) -> bool:
        pass

    @abstractmethod
    def get_lines(self, buf, start: int, end: int) -> List[str]:
        """Read lines [start, end) using 0-based indexes"""
        pass

    @abstractmethod
    def get_marklist(self, buffer_name: str) -> List[dict]:
        """Raw local marks of the named buffer in native order"""
        pass

    @abstractmethod
    def cursor_position(self) -> Tuple[int, int]:
        """Cursor as (1-based line, 0-based column)"""
        pass

    @abstractmethod
    def screen_position(self, line: int, col: int) -> Optional[Tuple[int, int]]:
        """Window-relative 0-based (row, col) of a text position, None if off-screen"""
        pass

    @abstractmethod
    def viewport_size(self) -> Tuple[int, int]:
        """(width, height) of the current window"""
        pass

    @abstractmethod
    def create_buffer(self):
        """Create a scratch, non-modifiable buffer for the overlay"""
        pass

    @abstractmethod
    def set_modifiable(self, buf, modifiable: bool):
        pass

    @abstractmethod
    def set_lines(self, buf, lines: List[str]):
        """Replace the whole buffer content"""
        pass

    @abstractmethod
    def open_window(self, buf, geometry: Geometry, border: str):
        """Open a floating window showing buf and return its handle"""
        pass

    @abstractmethod
    def window_is_valid(self, win) -> bool:
        pass

    @abstractmethod
    def close_window(self, win):
        pass

    @abstractmethod
    def delete_buffer(self, buf):
        pass

    @abstractmethod
    def warn(self, message: str):
        pass

    @abstractmethod
    def defer(self, callback):
        """Run callback once the overlay may be painted, before any later input"""
        pass

    @abstractmethod
    def getchar(self):
        """Block until the next keystroke and return it raw"""
        pass

    @abstractmethod
    def jump(self, prefix: str, name: str):
        pass


class NvimHost(Host):
    WARN = 3  # vim.log.levels.WARN

    def __init__(self, nvim: pynvim.Nvim):
        self.nvim = nvim

    def current_buffer(self):
        return self.nvim.current.buffer.number

    def buffer_name(self, buf) -> str:
        return self.nvim.funcs.bufname(buf)

    def is_normal_buffer(self, buf) -> bool:
        return self.nvim.api.get_option_value("buftype", {"buf": buf}) == ""

    def buffer_is_valid(self, buf) -> bool:
        return bool(self.nvim.api.buf_is_valid(buf))

    def get_lines(self, buf, start: int, end: int) -> List[str]:
        return self.nvim.api.buf_get_lines(buf, start, end, False)

    def get_marklist(self, buffer_name: str) -> List[dict]:
        return self.nvim.funcs.getmarklist(buffer_name)

    def cursor_position(self) -> Tuple[int, int]:
        return tuple(self.nvim.current.window.cursor)

    def screen_position(self, line: int, col: int) -> Optional[Tuple[int, int]]:
        pos = self.nvim.funcs.screenpos(0, line, col + 1)
        if not pos or pos.get("row", 0) == 0:
            return None
        win_row, win_col = self.nvim.funcs.win_screenpos(0)
        return pos["row"] - win_row, pos["col"] - win_col

    def viewport_size(self) -> Tuple[int, int]:
        window = self.nvim.current.window
        return window.width, window.height

    def create_buffer(self):
        buf = self.nvim.api.create_buf(False, True).handle
        for name, value in (
            ("bufhidden", "wipe"),
            ("filetype", "marks-popup"),
            ("modifiable", False),
        ):
            self.nvim.api.set_option_value(name, value, {"buf": buf})
        return buf

    def set_modifiable(self, buf, modifiable: bool):
        self.nvim.api.set_option_value("modifiable", modifiable, {"buf": buf})

    def set_lines(self, buf, lines: List[str]):
        self.nvim.api.buf_set_lines(buf, 0, -1, False, lines)

    def open_window(self, buf, geometry: Geometry, border: str):
        opts = {
            "relative": "win",
            "width": geometry.width,
            "height": geometry.height,
            "row": geometry.row,
            "col": geometry.col,
            "style": "minimal",
            "border": border,
        }
        win = self.nvim.api.open_win(buf, False, opts).handle
        for name, value in (
            ("winhl", "Normal:Normal"),
            ("number", False),
            ("relativenumber", False),
            ("wrap", False),
        ):
            self.nvim.api.set_option_value(name, value, {"win": win})
        return win

    def window_is_valid(self, win) -> bool:
        return bool(self.nvim.api.win_is_valid(win))

    def close_window(self, win):
        self.nvim.api.win_close(win, True)

    def delete_buffer(self, buf):
        self.nvim.api.buf_delete(buf, {"force": True})

    def warn(self, message: str):
        self.nvim.api.notify(message, self.WARN, {})

    def defer(self, callback):
        # Runs inside the sync MarksPopupShow request; Neovim holds typeahead
        # until that request returns.
        callback()

    def getchar(self):
        # Paint the overlay before blocking on input
        self.nvim.command("redraw")
        return self.nvim.funcs.getchar()

    def jump(self, prefix: str, name: str):
        self.nvim.command(f"normal! {prefix}{name}")


def is_mark_name(char) -> bool:
    """True for exactly one ASCII letter or digit"""
    return (
        isinstance(char, str)
        and len(char) == 1
        and _MARK_NAME_RE.fullmatch(char) is not None
    )


def process_mark(raw: dict, host: Host) -> Optional[MarkRecord]:
    """Turn one raw marklist entry into a MarkRecord.

    Returns None for marks that should not be shown: names outside
    [a-zA-Z0-9] (global and special marks), marks whose buffer is gone,
    and entries that do not have the expected shape.
    """
    try:
        name = raw["mark"][1:]
        bufnr, ln, cn = raw["pos"][:3]
    except (KeyError, TypeError, ValueError):
        logger.debug(f"Malformed mark entry: {raw!r}")
        return None

    if not is_mark_name(name):
        return None

    if not host.buffer_is_valid(bufnr):
        logger.debug(f"Dropping mark {name}: buffer {bufnr} is not valid")
        return None

    content = ""
    lines = host.get_lines(bufnr, ln - 1, ln)
    if lines:
        content = lines[0].lstrip()

    return MarkRecord(
        name=name,
        file=host.buffer_name(bufnr),
        line=ln,
        column=cn,
        content=content,
    )


@perf_timer("Collecting marks")
def collect_marks(host: Host) -> Optional[List[MarkRecord]]:
    """Local marks of the current buffer, or None if it is a special buffer"""
    buf = host.current_buffer()
    if not host.is_normal_buffer(buf):
        logger.debug(f"Buffer {buf} is not a normal buffer, declining")
        return None

    marks = []
    for raw in host.get_marklist(host.buffer_name(buf)):
        mark = process_mark(raw, host)
        if mark is not None:
            marks.append(mark)
    return marks


def render_lines(marks) -> List[str]:
    if not marks:
        return [NO_MARKS]
    return [f"{mark.name}: {mark.content}" for mark in marks]


def overlay_height(config: Config, count: int) -> int:
    return min(config.max_height, max(1, count))


def border_size(border) -> int:
    """Cells the border adds to each dimension of the overlay"""
    if border in (None, "", "none"):
        return 0
    if border == "shadow":
        return 1
    return 2


def compute_geometry(
    config: Config,
    count: int,
    cursor: Optional[Tuple[int, int]],
    viewport: Tuple[int, int],
) -> Geometry:
    """Place the overlay next to the cursor without leaving the viewport.

    Starts at the cursor offset by (offset_x, offset_y). When the overlay
    would run past the right edge it moves left by width + 2 * offset_x,
    and past the bottom edge it moves up by height + offset_y, never
    going below 0. Border cells count as part of the overlay in both the
    clamp and the shift. A missing cursor position is treated as (0, 0).
    Fixed positions ("left", "right") centre the overlay vertically
    against the window edge instead.

    The returned width and height are the content size, without border.
    """
    viewport_width, viewport_height = viewport
    frame = border_size(config.border)
    width = max(1, min(config.width, viewport_width - frame))
    height = max(1, min(overlay_height(config, count), viewport_height - frame))

    if config.position in ("left", "right"):
        col = viewport_width - width - frame if config.position == "right" else 0
        row = (viewport_height - height - frame) // 2
        return Geometry(max(0, row), max(0, col), width, height)

    cursor_row, cursor_col = cursor or (0, 0)
    row = cursor_row + config.offset_y
    col = cursor_col + config.offset_x

    if col + width + frame > viewport_width:
        col = max(0, col - (width + frame + 2 * config.offset_x))
    if row + height + frame > viewport_height:
        row = max(0, row - (height + frame + config.offset_y))

    return Geometry(row, col, width, height)


class MarksOverlay:
    """The floating window listing marks, and its backing buffer."""

    def __init__(self, host: Host, config: Config):
        self.host = host
        self.config = config
        self.buf = None
        self.win = None
        self.marks: Optional[Tuple[MarkRecord, ...]] = None

    @property
    def is_open(self) -> bool:
        return self.win is not None

    def _placement(self, count: int) -> Geometry:
        cursor = None
        if self.config.position not in ("left", "right"):
            line, col = self.host.cursor_position()
            cursor = self.host.screen_position(line, col)
            if cursor is None:
                self.host.warn(
                    "marks-popup: cursor is not visible, showing at top left"
                )
        return compute_geometry(
            self.config, count, cursor, self.host.viewport_size()
        )

    @perf_timer("Opening overlay")
    def open(self) -> bool:
        """Open the overlay for the current buffer.

        Any overlay already open is closed first. Returns False, creating
        nothing, when the current buffer is a special buffer.
        """
        self.close()

        marks = collect_marks(self.host)
        if marks is None:
            return False

        geometry = self._placement(len(marks))
        logger.debug(f"Overlay geometry: {geometry}")

        self.buf = self.host.create_buffer()
        try:
            self.win = self.host.open_window(
                self.buf, geometry, self.config.border
            )
        except Exception:
            self.close()
            raise
        self.marks = tuple(marks)
        self.update(self.marks)
        return True

    def update(self, marks):
        if self.buf is None or not self.host.buffer_is_valid(self.buf):
            return

        self.host.set_modifiable(self.buf, True)
        try:
            self.host.set_lines(self.buf, render_lines(marks))
        finally:
            self.host.set_modifiable(self.buf, False)

    def close(self):
        """Destroy the window and buffer if they still exist; safe to repeat"""
        if self.win is not None and self.host.window_is_valid(self.win):
            self.host.close_window(self.win)
        if self.buf is not None and self.host.buffer_is_valid(self.buf):
            self.host.delete_buffer(self.buf)
        self.win = None
        self.buf = None
        self.marks = None


def decode_key(key) -> Optional[str]:
    """Decode a raw keystroke to a mark name, None if it cannot be one"""
    if isinstance(key, int):
        if not 0 <= key <= 0x10FFFF:
            return None
        key = chr(key)
    return key if is_mark_name(key) else None


@dataclass
class Session:
    prefix: str
    marks: Tuple[MarkRecord, ...]
    future: Future = field(default_factory=Future)

    @property
    def names(self):
        return {mark.name for mark in self.marks}


class MarksPopup:
    """Runs one overlay session per trigger key press."""

    def __init__(self, host: Host, config: Config):
        self.host = host
        self.config = config
        self.overlay = MarksOverlay(host, config)
        self.session: Optional[Session] = None

    def show_marks(self, prefix: str) -> Optional[Future]:
        """Open the overlay and wait for one keystroke on the event loop.

        Returns a future resolving to the name of the mark jumped to, or
        None when the keystroke did not select a shown mark. Returns None
        directly when the overlay declined to open.
        """
        if prefix not in PREFIXES:
            raise ValueError(f"Invalid mark prefix: {prefix!r}")

        self._drop_session()
        if not self.overlay.open():
            return None

        session = Session(prefix, self.overlay.marks)
        self.session = session
        self.host.defer(functools.partial(self._await_key, session))
        return session.future

    def close(self):
        self._drop_session()
        self.overlay.close()

    def _drop_session(self):
        if self.session is not None:
            self.session.future.cancel()
            self.session = None

    def _await_key(self, session: Session):
        if session is not self.session or session.future.cancelled():
            logger.debug("Ignoring stale marks session")
            return

        try:
            try:
                key = self.host.getchar()
            finally:
                if self.session is session:
                    self.overlay.close()
                    self.session = None
        except Exception as e:
            logger.error(f"Reading key failed: {str(e)}", exc_info=True)
            if not session.future.cancelled():
                session.future.set_exception(e)
            return

        if session.future.cancelled():
            return

        char = decode_key(key)
        logger.debug(f"Key {key!r} decoded to {char!r}")
        if char is None or char not in session.names:
            session.future.set_result(None)
            return

        logger.debug(f"Jumping to mark {session.prefix}{char}")
        try:
            self.host.jump(session.prefix, char)
        except Exception as e:
            # The mark may have been deleted while the overlay was up
            logger.error(f"Jump to {char} failed: {str(e)}")
            session.future.set_exception(e)
            return
        session.future.set_result(char)


@pynvim.plugin
class MarksPopupPlugin:
    def __init__(self, nvim: pynvim.Nvim):
        self.nvim = nvim
        self.popup: Optional[MarksPopup] = None

    @pynvim.function("MarksPopupSetup", sync=True)
    def setup(self, args):
        opts = args[0] if args else None
        config = Config.from_nvim(self.nvim, opts)
        setup_logging(config)
        if self.popup is not None:
            self.popup.close()
        self.popup = MarksPopup(NvimHost(self.nvim), config)

        for prefix, quoted in (("'", '"\'"'), ("`", "'`'")):
            self.nvim.api.set_keymap(
                "n",
                prefix,
                f"<cmd>call MarksPopupShow({quoted})<CR>",
                {"noremap": True, "silent": True},
            )

    @pynvim.function("MarksPopupShow", sync=True)
    def show(self, args):
        if self.popup is None:
            self.setup([])
        self.popup.show_marks(args[0] if args else "'")

    @pynvim.command("MarksPopupClose")
    def close(self, *args):
        if self.popup is not None:
            self.popup.close()
