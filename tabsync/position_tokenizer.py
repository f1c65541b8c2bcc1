"""PositionTokenizer: locates every beat of an AlphaTex-like document in its source text."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import Final

import numpy as np

from tabsync.position_models import BeatPosition, ParseResult

DIGITS: Final[str] = "0123456789"
BAR_SEPARATOR: Final[str] = "|"

# `:4`, `:8.`, `:8{tu 3}` with nothing after them.
_PURE_DURATION: Final[re.Pattern[str]] = re.compile(r":\d+\.?(?:\{[^{}]*\})?")
# `{dy fff}`, `{h}` on their own.
_PURE_EFFECT: Final[re.Pattern[str]] = re.compile(r"\{[^{}]*\}")
# A duration glued to the note that follows it, e.g. `:8(3.2 0.3)` or `:83.2`.
_DURATION_PREFIX: Final[re.Pattern[str]] = re.compile(
    r":(?:128|64|32|16|8|4|2|1)(?:\.(?!\d))?(?:\{[^{}]*\})?"
)


class LineIndex:
    """
    Offset <-> (line, column) conversion for one version of a document.

    Line start offsets are kept in a sorted NumPy array so each lookup is a
    single binary search. Lines and columns are 0-based; out-of-range input
    is clamped rather than rejected.
    """

    def __init__(self, text: str) -> None:
        self.text_length = len(text)
        starts = [0]
        starts.extend(match.end() for match in re.finditer("\n", text))
        self._line_starts = np.asarray(starts, dtype=np.int64)

    @property
    def line_count(self) -> int:
        return int(self._line_starts.size)

    def line_length(self, line: int) -> int:
        """Length of *line* without its trailing newline."""
        start = int(self._line_starts[line])
        if line + 1 < self.line_count:
            return int(self._line_starts[line + 1]) - 1 - start
        return self.text_length - start

    def offset_to_line_col(self, offset: int) -> tuple[int, int]:
        offset = min(max(offset, 0), self.text_length)
        line = int(np.searchsorted(self._line_starts, offset, side="right")) - 1
        return line, offset - int(self._line_starts[line])

    def line_col_to_offset(self, line: int, column: int) -> int:
        line = min(max(line, 0), self.line_count - 1)
        column = min(max(column, 0), self.line_length(line))
        return int(self._line_starts[line]) + column


def offset_to_line_col(text: str, offset: int) -> tuple[int, int]:
    """Convert a document offset to a 0-based (line, column) pair."""
    return LineIndex(text).offset_to_line_col(offset)


def line_col_to_offset(text: str, line: int, column: int) -> int:
    """Convert a 0-based (line, column) pair to a document offset."""
    return LineIndex(text).line_col_to_offset(line, column)


# ── Lexical helpers ────────────────────────────────────────────────────────────

def _digit_at(text: str, index: int) -> bool:
    return 0 <= index < len(text) and text[index] in DIGITS


def _skip_string(text: str, start: int) -> int:
    """Return the offset just past the string opened at *start* (or end of text)."""
    i = start + 1
    n = len(text)
    while i < n:
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == '"':
            return i + 1
        i += 1
    return n


def _skip_line_comment(text: str, start: int) -> int:
    end = text.find("\n", start)
    return len(text) if end == -1 else end


def _skip_block_comment(text: str, start: int) -> int:
    end = text.find("*/", start + 2)
    return len(text) if end == -1 else end + 2


def find_content_start(text: str) -> int:
    """
    Return the offset where notation content begins.

    Content starts right after the first stand-alone ``.``: a dot outside
    strings and comments with no digit directly before or after it (so the
    dots in ``3.2.4`` never qualify). Without such a dot the whole document
    is content, starting at its first character that is neither whitespace
    nor comment.
    """
    n = len(text)
    first_content: int | None = None
    i = 0
    while i < n:
        ch = text[i]
        if ch == '"':
            if first_content is None:
                first_content = i
            i = _skip_string(text, i)
            continue
        if text.startswith("//", i):
            i = _skip_line_comment(text, i)
            continue
        if text.startswith("/*", i):
            i = _skip_block_comment(text, i)
            continue
        if ch == "." and not _digit_at(text, i - 1) and not _digit_at(text, i + 1):
            return i + 1
        if first_content is None and not ch.isspace():
            first_content = i
        i += 1
    return n if first_content is None else first_content


def modifier_prefix_length(token: str) -> int | None:
    """
    Classify a raw token.

    Returns:
        ``None`` if the token is a pure duration or effect modifier and must
        not become a beat, otherwise the number of leading characters (a
        glued duration prefix) to leave out of the beat's span.
    """
    if _PURE_DURATION.fullmatch(token) or _PURE_EFFECT.fullmatch(token):
        return None
    match = _DURATION_PREFIX.match(token)
    if match and match.end() < len(token):
        return match.end()
    return 0


# ── Scanner ────────────────────────────────────────────────────────────────────

class _BeatScanner:
    """
    Single pass over the content part of a document.

    Tracks string/comment/chord/brace-group modes and the open token, and
    emits a BeatPosition each time a token closes and survives the modifier
    filter.
    """

    def __init__(self, text: str, content_start: int, line_index: LineIndex) -> None:
        self.text = text
        self.content_start = content_start
        self.line_index = line_index

        self.bar_index = 0
        self.beat_index = 0
        self.chord_depth = 0
        self.brace_depth = 0
        self.token_start: int | None = None
        self.token_end = 0
        self.beats: list[BeatPosition] = []

    @property
    def _grouped(self) -> bool:
        return self.chord_depth > 0 or self.brace_depth > 0

    def _extend(self, start: int, end: int) -> None:
        if self.token_start is None:
            self.token_start = start
        self.token_end = end

    def _track_group(self, ch: str) -> None:
        if ch == "(":
            self.chord_depth += 1
        elif ch == ")":
            self.chord_depth = max(0, self.chord_depth - 1)
        elif ch == "{":
            self.brace_depth += 1
        elif ch == "}":
            self.brace_depth = max(0, self.brace_depth - 1)

    def _close_token(self) -> None:
        if self.token_start is None:
            return
        start, end = self.token_start, self.token_end
        self.token_start = None

        skip = modifier_prefix_length(self.text[start:end])
        if skip is None:
            return
        start += skip
        if start >= end:
            return

        start_line, start_column = self.line_index.offset_to_line_col(start)
        end_line, end_column = self.line_index.offset_to_line_col(end)
        self.beats.append(
            BeatPosition(
                bar_index=self.bar_index,
                beat_index=self.beat_index,
                start_offset=start,
                end_offset=end,
                start_line=start_line,
                start_column=start_column,
                end_line=end_line,
                end_column=end_column,
            )
        )
        self.beat_index += 1

    def _close_bar(self) -> None:
        self._close_token()
        self.bar_index += 1
        self.beat_index = 0

    def scan(self) -> list[BeatPosition]:
        text = self.text
        n = len(text)
        i = self.content_start

        while i < n:
            ch = text[i]

            if ch == '"':
                self._extend(i, i)
                i = _skip_string(text, i)
                self.token_end = i
                continue

            if text.startswith("//", i) or text.startswith("/*", i):
                if not self._grouped:
                    self._close_token()
                if text[i + 1] == "/":
                    i = _skip_line_comment(text, i)
                else:
                    i = _skip_block_comment(text, i)
                continue

            if self._grouped:
                # Whitespace and `|` are part of the group; only content moves the end.
                self._track_group(ch)
                if not ch.isspace():
                    self._extend(i, i + 1)
                i += 1
                continue

            if ch == BAR_SEPARATOR:
                self._close_bar()
                i += 1
                while i < n and text[i].isspace():
                    i += 1
                continue

            if ch.isspace():
                self._close_token()
                i += 1
                continue

            if ch == "(" and self.token_start is not None and text[self.token_end - 1] == ")":
                # `(a b)(c d)`: each group is its own beat.
                self._close_token()
            self._track_group(ch)
            self._extend(i, i + 1)
            i += 1

        self._close_token()
        return self.beats


@lru_cache(maxsize=16)
def parse_beat_positions(text: str) -> ParseResult:
    """
    Tokenize *text* into beat positions.

    Never raises: unterminated strings, comments and chord groups simply run
    to the end of the document. Results are cached per text version, so the
    mappers and the sync controller can call this freely on every event.

    Args:
        text: Full document source.

    Returns:
        ParseResult with beats in document order and the content start offset.
    """
    content_start = find_content_start(text)
    scanner = _BeatScanner(text, content_start, LineIndex(text))
    return ParseResult(beats=tuple(scanner.scan()), content_start=content_start)
