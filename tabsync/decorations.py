"""Decorations: immutable highlight sets and how they survive document edits."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

from tabsync.position_models import CodeRange

logger = logging.getLogger(__name__)


class HighlightStyle(Enum):
    """The three highlight layers the sync controller maintains."""

    SELECTION = "selection"
    PLAYBACK = "live-playback"
    PLAYBACK_BAR = "parked-bar"

    @property
    def css_class(self) -> str:
        """Class name the host editor styles this layer with."""
        return _CSS_CLASSES[self]


_CSS_CLASSES: dict[HighlightStyle, str] = {
    HighlightStyle.SELECTION: "cm-score-selection-highlight",
    HighlightStyle.PLAYBACK: "cm-playback-highlight",
    HighlightStyle.PLAYBACK_BAR: "cm-playback-bar-highlight",
}


class ChangeSetError(ValueError):
    """A change set whose changes overlap or fall outside the document."""


class RemapError(ValueError):
    """A decoration set that cannot be carried through a change set."""


# ── Edits ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TextChange:
    """Replace ``[start, end)`` of the old document with *inserted_length* characters."""

    start: int
    end: int
    inserted_length: int = 0

    @property
    def delta(self) -> int:
        return self.inserted_length - (self.end - self.start)


@dataclass(frozen=True)
class ChangeSet:
    """
    One editor transaction's worth of text changes.

    Changes are expressed in old-document coordinates, sorted by position and
    non-overlapping.

    Raises:
        ChangeSetError: On construction, if the changes are not well formed.
    """

    changes: tuple[TextChange, ...]
    old_length: int

    def __post_init__(self) -> None:
        previous_end = 0
        for change in self.changes:
            if change.start < previous_end or change.start > change.end:
                raise ChangeSetError(f"Overlapping or inverted change {change}.")
            if change.end > self.old_length or change.inserted_length < 0:
                raise ChangeSetError(
                    f"Change {change} does not fit a document of length {self.old_length}."
                )
            previous_end = change.end

    @classmethod
    def of(cls, old_length: int, *changes: TextChange) -> ChangeSet:
        return cls(changes=tuple(sorted(changes, key=lambda c: (c.start, c.end))), old_length=old_length)

    @property
    def new_length(self) -> int:
        return self.old_length + sum(change.delta for change in self.changes)

    @property
    def empty(self) -> bool:
        return not self.changes

    def map_pos(self, pos: int, assoc: int = -1) -> int:
        """
        Map an old-document position into the new document.

        A position touched by an insertion or inside a replaced range lands
        before the new text when *assoc* < 0 and after it when *assoc* > 0.
        """
        shift = 0
        for change in self.changes:
            if pos < change.start:
                break
            if pos > change.end:
                shift += change.delta
                continue

            new_start = change.start + shift
            if change.start == change.end:
                return new_start + (change.inserted_length if assoc > 0 else 0)
            if pos == change.start:
                return new_start
            if pos == change.end:
                return new_start + change.inserted_length
            return new_start + (change.inserted_length if assoc > 0 else 0)
        return pos + shift


# ── Decoration sets ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Decoration:
    start: int
    end: int
    style: HighlightStyle


@dataclass(frozen=True)
class DecorationSet:
    """
    An immutable, position-sorted set of decorations over one document version.

    Sets are never edited in place: building, mapping and clearing all
    return a new instance.
    """

    decorations: tuple[Decoration, ...] = ()
    doc_length: int = 0

    @classmethod
    def none(cls) -> DecorationSet:
        return cls()

    @classmethod
    def build(
        cls,
        ranges: Iterable[CodeRange],
        style: HighlightStyle,
        doc_length: int,
    ) -> DecorationSet:
        """Clamp *ranges* to ``[0, doc_length]``, drop empty ones and sort by start."""
        decorations: list[Decoration] = []
        for code_range in ranges:
            start = max(0, min(code_range.start, doc_length))
            end = max(0, min(code_range.end, doc_length))
            if start < end:
                decorations.append(Decoration(start=start, end=end, style=style))
        decorations.sort(key=lambda d: (d.start, d.end))
        return cls(decorations=tuple(decorations), doc_length=doc_length)

    def __bool__(self) -> bool:
        return bool(self.decorations)

    def __len__(self) -> int:
        return len(self.decorations)

    def __iter__(self) -> Iterator[Decoration]:
        return iter(self.decorations)

    @property
    def spans(self) -> list[tuple[int, int]]:
        return [(d.start, d.end) for d in self.decorations]

    def map(self, changes: ChangeSet) -> DecorationSet:
        """
        Carry every decoration through *changes*.

        Raises:
            RemapError: If *changes* was made against a different document
                length, or an edit collapses one of the decorations.
        """
        if not self.decorations:
            return DecorationSet(doc_length=changes.new_length)
        if changes.old_length != self.doc_length:
            raise RemapError(
                f"Change set is for length {changes.old_length}, "
                f"decorations are for length {self.doc_length}."
            )

        mapped: list[Decoration] = []
        for decoration in self.decorations:
            start = changes.map_pos(decoration.start, assoc=1)
            end = changes.map_pos(decoration.end, assoc=-1)
            if start >= end:
                raise RemapError(f"Edit removed decoration {decoration.start}-{decoration.end}.")
            mapped.append(Decoration(start=start, end=end, style=decoration.style))
        return DecorationSet(decorations=tuple(mapped), doc_length=changes.new_length)


# ── Layer updates ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LayerEffect:
    """Replace one layer's contents; no ranges means clear the layer."""

    style: HighlightStyle
    ranges: tuple[CodeRange, ...] | None = None

    @classmethod
    def clear(cls, style: HighlightStyle) -> LayerEffect:
        return cls(style=style)

    @classmethod
    def install(cls, style: HighlightStyle, ranges: Iterable[CodeRange]) -> LayerEffect:
        return cls(style=style, ranges=tuple(ranges))

    @property
    def clears(self) -> bool:
        return not self.ranges


@dataclass(frozen=True)
class Transaction:
    """Effects and/or an edit to apply to the layers; *doc_length* is the resulting length."""

    effects: tuple[LayerEffect, ...] = ()
    changes: ChangeSet | None = None
    doc_length: int = 0


def update_layer(
    style: HighlightStyle,
    current: DecorationSet,
    transaction: Transaction,
) -> DecorationSet:
    """
    Compute a layer's next decoration set.

    The last effect aimed at *style* wins and is built from scratch. Without
    one, a document change remaps the current set, and a remap that is not
    representable clears the layer. Any failure while building yields an
    empty set: a missing highlight is acceptable, a crashed editor is not.
    """
    effect: LayerEffect | None = None
    for candidate in transaction.effects:
        if candidate.style is style:
            effect = candidate

    if effect is not None:
        if effect.clears:
            return DecorationSet.none()
        try:
            return DecorationSet.build(effect.ranges or (), style, transaction.doc_length)
        except Exception:
            logger.exception("Error building %s highlight", style.value)
            return DecorationSet.none()

    if transaction.changes is not None and not transaction.changes.empty:
        try:
            return current.map(transaction.changes)
        except RemapError as exc:
            logger.debug("Clearing %s highlight: %s", style.value, exc)
            return DecorationSet.none()

    return current
