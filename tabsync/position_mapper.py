"""Position mappers: translate between score coordinates and source text ranges.

Every function here is pure and total. "Nothing to highlight" is signalled by
``None`` (or an empty list), never by an exception, and callers treat it as
"clear the corresponding highlight layer".
"""

from __future__ import annotations

from typing import Final

import numpy as np

from tabsync.position_models import (
    SENTINEL_INDEX,
    BeatPosition,
    CodeRange,
    EditorCursorInfo,
    ParseResult,
    PlaybackBeatInfo,
    ScoreSelectionInfo,
)
from tabsync.position_tokenizer import LineIndex, parse_beat_positions

#: A cursor further than this many characters from every beat maps to nothing.
PROXIMITY_THRESHOLD: Final[int] = 50

#: Weight of a bar mismatch relative to a beat mismatch in fallback lookups.
BAR_DISTANCE_WEIGHT: Final[int] = 100


def beat_to_code_range(beat: BeatPosition) -> CodeRange:
    """Express a single beat's span as a CodeRange."""
    return CodeRange(
        start=beat.start_offset,
        end=beat.end_offset,
        start_line=beat.start_line,
        start_column=beat.start_column,
        end_line=beat.end_line,
        end_column=beat.end_column,
    )


def _resolve_beat(parsed: ParseResult, bar_index: int, beat_index: int) -> BeatPosition | None:
    """
    Find the beat best matching ``(bar_index, beat_index)``.

    Lookup order: exact match, then the first beat of the bar, then the beat
    with the smallest ``|Δbar| * 100 + |Δbeat|`` (first one wins on ties).
    The score and the text can briefly disagree after an edit, so something
    plausible is always preferred over nothing.
    """
    if not parsed.beats:
        return None

    beat = parsed.find_beat(bar_index, beat_index)
    if beat is None:
        beat = parsed.first_beat_in_bar(bar_index)
    if beat is None:
        beat = min(
            parsed.beats,
            key=lambda b: abs(b.bar_index - bar_index) * BAR_DISTANCE_WEIGHT
            + abs(b.beat_index - beat_index),
        )
    return beat


def map_selection_to_code_range(
    text: str,
    selection: ScoreSelectionInfo,
    parsed: ParseResult | None = None,
) -> CodeRange | None:
    """
    Map a score selection to the source text it was written in.

    Args:
        text:      Document source.
        selection: Beat range selected in the rendered score.
        parsed:    Tokenizer output for *text*, if the caller already has it.

    Returns:
        CodeRange from the start beat's first character to the end beat's
        last one, or ``None`` if there are no beats or the range is empty or
        out of bounds.
    """
    if parsed is None:
        parsed = parse_beat_positions(text)

    start_beat = _resolve_beat(parsed, selection.start_bar_index, selection.start_beat_index)
    end_beat = _resolve_beat(parsed, selection.end_bar_index, selection.end_beat_index)
    if start_beat is None or end_beat is None:
        return None

    start = start_beat.start_offset
    end = end_beat.end_offset
    if start < 0 or end < 0 or start >= end or end > len(text):
        return None

    return CodeRange(
        start=start,
        end=end,
        start_line=start_beat.start_line,
        start_column=start_beat.start_column,
        end_line=end_beat.end_line,
        end_column=end_beat.end_column,
    )


def find_beat_at_position(
    text: str,
    line: int,
    column: int,
    parsed: ParseResult | None = None,
) -> EditorCursorInfo:
    """
    Resolve an editor cursor to the beat it sits in (editor -> score sync).

    Args:
        text:   Document source.
        line:   0-based cursor line.
        column: 0-based cursor column.
        parsed: Tokenizer output for *text*, if the caller already has it.

    Returns:
        EditorCursorInfo for the containing beat, or for the nearest beat
        within PROXIMITY_THRESHOLD characters. Positions in the header, or
        too far from every beat, get ``bar_index == beat_index == -1``.
    """
    if parsed is None:
        parsed = parse_beat_positions(text)
    offset = LineIndex(text).line_col_to_offset(line, column)

    sentinel = EditorCursorInfo(
        line=line, column=column, bar_index=SENTINEL_INDEX, beat_index=SENTINEL_INDEX
    )
    if offset < parsed.content_start or not parsed.beats:
        return sentinel

    for beat in parsed.beats:
        if beat.contains(offset):
            return EditorCursorInfo(
                line=line, column=column, bar_index=beat.bar_index, beat_index=beat.beat_index
            )

    starts = np.fromiter((b.start_offset for b in parsed.beats), dtype=np.int64)
    ends = np.fromiter((b.end_offset for b in parsed.beats), dtype=np.int64)
    distances = np.maximum(starts - offset, 0) + np.maximum(offset - ends, 0)
    nearest = int(np.argmin(distances))

    if int(distances[nearest]) < PROXIMITY_THRESHOLD:
        beat = parsed.beats[nearest]
        return EditorCursorInfo(
            line=line, column=column, bar_index=beat.bar_index, beat_index=beat.beat_index
        )
    return sentinel


def map_playback_to_code_range(
    text: str,
    playback: PlaybackBeatInfo,
    parsed: ParseResult | None = None,
) -> CodeRange | None:
    """Map the playing beat to its text: exact beat, else the bar's first beat, else None."""
    if parsed is None:
        parsed = parse_beat_positions(text)

    beat = parsed.find_beat(playback.bar_index, playback.beat_index)
    if beat is None:
        beat = parsed.first_beat_in_bar(playback.bar_index)
    if beat is None:
        return None
    return beat_to_code_range(beat)


def get_bar_ranges(
    text: str,
    bar_index: int,
    parsed: ParseResult | None = None,
) -> list[CodeRange]:
    """
    Return the ranges that cover a whole bar, one per source line it spans.

    Each range runs from the first beat starting on a line to the last beat
    of the bar on that line, so the whitespace and line breaks between lines
    are left unhighlighted.
    """
    if parsed is None:
        parsed = parse_beat_positions(text)

    ranges: list[CodeRange] = []
    run: list[BeatPosition] = []
    for beat in parsed.beats_in_bar(bar_index):
        if run and beat.start_line != run[0].start_line:
            ranges.append(_span(run))
            run = []
        run.append(beat)
    if run:
        ranges.append(_span(run))
    return ranges


def _span(beats: list[BeatPosition]) -> CodeRange:
    first, last = beats[0], beats[-1]
    return CodeRange(
        start=first.start_offset,
        end=last.end_offset,
        start_line=first.start_line,
        start_column=first.start_column,
        end_line=last.end_line,
        end_column=last.end_column,
    )
