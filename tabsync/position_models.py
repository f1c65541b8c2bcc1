"""Data models shared by the tokenizer, the mappers and the sync controller."""

from __future__ import annotations

from dataclasses import dataclass

#: Bar/beat index meaning "not mapped to any beat".
SENTINEL_INDEX = -1


@dataclass(frozen=True)
class BeatPosition:
    """
    Where one beat token lives in the source text.

    Attributes:
        bar_index:    0-based bar number, +1 per ``|`` separator.
        beat_index:   0-based beat number within the bar.
        start_offset: Offset of the first character of the beat.
        end_offset:   Offset just past the last character (exclusive).
        start_line / start_column / end_line / end_column:
                      0-based line/column of the two offsets.
    """

    bar_index: int
    beat_index: int
    start_offset: int
    end_offset: int
    start_line: int
    start_column: int
    end_line: int
    end_column: int

    def contains(self, offset: int) -> bool:
        """True if *offset* lies in ``[start_offset, end_offset]`` (end inclusive)."""
        return self.start_offset <= offset <= self.end_offset


@dataclass(frozen=True)
class ParseResult:
    """Tokenizer output: beats in document order plus where notation begins."""

    beats: tuple[BeatPosition, ...] = ()
    content_start: int = 0

    @property
    def bar_count(self) -> int:
        """Number of bars that contain at least one beat."""
        return len({beat.bar_index for beat in self.beats})

    def beats_in_bar(self, bar_index: int) -> list[BeatPosition]:
        return [beat for beat in self.beats if beat.bar_index == bar_index]

    def find_beat(self, bar_index: int, beat_index: int) -> BeatPosition | None:
        for beat in self.beats:
            if beat.bar_index == bar_index and beat.beat_index == beat_index:
                return beat
        return None

    def first_beat_in_bar(self, bar_index: int) -> BeatPosition | None:
        for beat in self.beats:
            if beat.bar_index == bar_index:
                return beat
        return None


@dataclass(frozen=True)
class CodeRange:
    """A half-open ``[start, end)`` span of the document with line/column info."""

    start: int
    end: int
    start_line: int
    start_column: int
    end_line: int
    end_column: int


@dataclass(frozen=True)
class ScoreSelectionInfo:
    """A (possibly degenerate) beat range selected in the rendered score."""

    start_bar_index: int
    start_beat_index: int
    end_bar_index: int
    end_beat_index: int


@dataclass(frozen=True)
class EditorCursorInfo:
    """
    The editor cursor resolved to a beat.

    ``bar_index == SENTINEL_INDEX`` means the cursor is outside addressable
    content (metadata header, or too far from any beat).
    """

    line: int
    column: int
    bar_index: int
    beat_index: int
    from_doc_change: bool = False

    @property
    def is_mapped(self) -> bool:
        return self.bar_index != SENTINEL_INDEX


@dataclass(frozen=True)
class PlaybackBeatInfo:
    """The beat the player is on (or parked at)."""

    bar_index: int
    beat_index: int
