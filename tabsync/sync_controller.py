"""EditorSyncController: drives the editor's highlight layers from score and playback events."""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from enum import Enum, auto
from types import MappingProxyType

from tabsync.decorations import (
    ChangeSet,
    DecorationSet,
    HighlightStyle,
    LayerEffect,
    Transaction,
    update_layer,
)
from tabsync.position_mapper import (
    find_beat_at_position,
    get_bar_ranges,
    map_playback_to_code_range,
    map_selection_to_code_range,
)
from tabsync.position_models import (
    CodeRange,
    EditorCursorInfo,
    PlaybackBeatInfo,
    ScoreSelectionInfo,
)
from tabsync.position_tokenizer import LineIndex, parse_beat_positions
from tabsync.scheduling import Handle, Scheduler

logger = logging.getLogger(__name__)


# ── Scrolling ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Viewport:
    """Vertical extent of the editor's scroll container, in pixels."""

    top: float
    height: float


@dataclass(frozen=True)
class ScrollRequest:
    """Ask the host to bring *position* to the top of the viewport, *y_margin* px below it."""

    position: int
    y_margin: int
    align: str = "start"


@dataclass(frozen=True)
class ScrollPolicy:
    """
    When and how far to scroll a highlight into view.

    A highlight whose top lies inside the comfort band (fractions of the
    viewport height, measured from its top) is left alone; otherwise the
    editor scrolls so the highlight sits *margin* pixels below the top.
    """

    top_fraction: float
    bottom_fraction: float
    margin_fraction: float = 0.0
    fixed_margin: int = 0

    def needs_scroll(self, coord_top: float | None, viewport: Viewport) -> bool:
        if coord_top is None:
            # Position not rendered yet, so it is certainly off screen.
            return True
        top = viewport.top + viewport.height * self.top_fraction
        bottom = viewport.top + viewport.height * self.bottom_fraction
        return coord_top < top or coord_top > bottom

    def margin_for(self, viewport: Viewport) -> int:
        if self.margin_fraction:
            return math.floor(viewport.height * self.margin_fraction)
        return self.fixed_margin


#: Continuous playback: narrow band, small fixed margin, so following stays smooth.
PLAYBACK_SCROLL = ScrollPolicy(top_fraction=0.15, bottom_fraction=0.70, fixed_margin=50)

#: One-shot "bring the parked bar into view": wide band, land a third of the way down.
PARKED_SCROLL = ScrollPolicy(top_fraction=0.20, bottom_fraction=0.80, margin_fraction=0.33)


@dataclass(frozen=True)
class ScrollTarget:
    position: int
    policy: ScrollPolicy


# ── Host editor seam ───────────────────────────────────────────────────────────

class EditorHost(ABC):
    """The text-editing surface: a source of geometry and a sink for highlights."""

    @abstractmethod
    def is_attached(self) -> bool:
        """True while the editor view is still mounted in the document tree."""

    @abstractmethod
    def document_length(self) -> int:
        """Length of the document currently shown."""

    @abstractmethod
    def apply_decorations(self, style: HighlightStyle, decorations: DecorationSet) -> None:
        """Replace the decorations of one highlight layer."""

    @abstractmethod
    def coords_at_pos(self, position: int) -> float | None:
        """Vertical pixel coordinate of *position*'s top, or None if not rendered."""

    @abstractmethod
    def viewport(self) -> Viewport:
        """Current scroll container extent."""

    @abstractmethod
    def scroll_into_view(self, request: ScrollRequest) -> None:
        """Scroll the editor as requested."""


# ── Pure planning ──────────────────────────────────────────────────────────────

class SyncState(Enum):
    IDLE = auto()
    SELECTION_ACTIVE = auto()
    PLAYBACK_ACTIVE = auto()
    CURSOR_PARKED = auto()


@dataclass(frozen=True)
class SyncInputs:
    """Everything the controller needs to decide what to highlight."""

    text: str = ""
    selection: ScoreSelectionInfo | None = None
    playback: PlaybackBeatInfo | None = None
    cursor_position: PlaybackBeatInfo | None = None
    is_playing: bool = False


@dataclass(frozen=True)
class HighlightPlan:
    state: SyncState
    effects: tuple[LayerEffect, ...]
    scroll: ScrollTarget | None = None


def resolve_state(inputs: SyncInputs) -> SyncState:
    """
    Pick the single visual mode for *inputs*.

    Playing beats everything; while stopped a score selection takes
    precedence over the parked player cursor.
    """
    if inputs.is_playing:
        return SyncState.PLAYBACK_ACTIVE if inputs.playback is not None else SyncState.IDLE
    if inputs.selection is not None:
        return SyncState.SELECTION_ACTIVE
    if inputs.cursor_position is not None:
        return SyncState.CURSOR_PARKED
    return SyncState.IDLE


def plan_highlights(inputs: SyncInputs) -> HighlightPlan:
    """
    Turn *inputs* into one effect per layer plus an optional scroll target.

    Layers that are not part of the resolved state are cleared, and all
    clearing effects come before the installing one, so the parked-bar
    highlight is gone before the live-playback highlight appears.
    """
    state = resolve_state(inputs)
    parsed = parse_beat_positions(inputs.text)
    installs: dict[HighlightStyle, list[CodeRange]] = {}
    scroll: ScrollTarget | None = None

    if state is SyncState.SELECTION_ACTIVE and inputs.selection is not None:
        code_range = map_selection_to_code_range(inputs.text, inputs.selection, parsed)
        if code_range is not None:
            installs[HighlightStyle.SELECTION] = [code_range]

    elif state is SyncState.PLAYBACK_ACTIVE and inputs.playback is not None:
        code_range = map_playback_to_code_range(inputs.text, inputs.playback, parsed)
        if code_range is not None:
            installs[HighlightStyle.PLAYBACK] = [code_range]
            scroll = ScrollTarget(position=code_range.start, policy=PLAYBACK_SCROLL)

    elif state is SyncState.CURSOR_PARKED and inputs.cursor_position is not None:
        bar_ranges = get_bar_ranges(inputs.text, inputs.cursor_position.bar_index, parsed)
        if bar_ranges:
            installs[HighlightStyle.PLAYBACK_BAR] = bar_ranges
            scroll = ScrollTarget(position=bar_ranges[0].start, policy=PARKED_SCROLL)

    effects = [LayerEffect.clear(style) for style in HighlightStyle if style not in installs]
    effects.extend(LayerEffect.install(style, ranges) for style, ranges in installs.items())
    return HighlightPlan(state=state, effects=tuple(effects), scroll=scroll)


# ── Controller ─────────────────────────────────────────────────────────────────

class EditorSyncController:
    """
    Owns the selection, live-playback and parked-bar layers of one editor.

    Callers pass in the full picture (text, selection, playback, parked
    cursor); the controller plans the highlights, buffers the resulting
    transactions and flushes them on the next turn of the event loop, never
    inside the editor callback that triggered them. Every host call is
    guarded: if the editor is gone, work is dropped; if it fails, the error
    is logged and the highlight is simply missing.

    Usage:

        controller = EditorSyncController(host, AsyncioScheduler())
        controller.update_playback(text, beat, cursor, is_playing=True)
    """

    def __init__(self, host: EditorHost, scheduler: Scheduler, auto_scroll: bool = True) -> None:
        """
        Args:
            host:        Editor surface to decorate and scroll.
            scheduler:   Provides the next-turn deferral for dispatch.
            auto_scroll: Default for scrolling highlights into view.
        """
        self.host = host
        self.scheduler = scheduler
        self.auto_scroll = auto_scroll

        self._layers: dict[HighlightStyle, DecorationSet] = {
            style: DecorationSet.none() for style in HighlightStyle
        }
        # What the host last accepted; only advanced after a successful apply.
        self._applied: dict[HighlightStyle, DecorationSet] = dict(self._layers)
        self._inputs = SyncInputs()
        self._state = SyncState.IDLE
        self._buffer: list[Transaction] = []
        self._scroll: ScrollTarget | None = None
        self._flush_handle: Handle | None = None

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def inputs(self) -> SyncInputs:
        return self._inputs

    @property
    def layers(self) -> Mapping[HighlightStyle, DecorationSet]:
        return MappingProxyType(self._layers)

    def layer(self, style: HighlightStyle) -> DecorationSet:
        return self._layers[style]

    @property
    def has_pending(self) -> bool:
        return bool(self._buffer)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def update(self, inputs: SyncInputs, auto_scroll: bool | None = None) -> HighlightPlan:
        """Re-plan every layer from *inputs* and queue the result for the next turn."""
        self._inputs = inputs
        plan = plan_highlights(inputs)
        self._state = plan.state

        scroll_enabled = self.auto_scroll if auto_scroll is None else auto_scroll
        self._enqueue(
            Transaction(effects=plan.effects, doc_length=len(inputs.text)),
            plan.scroll if scroll_enabled else None,
            replaces_scroll=True,
        )
        return plan

    def update_selection(self, text: str, selection: ScoreSelectionInfo | None) -> HighlightPlan:
        """A selection was made (or cleared) in the rendered score."""
        return self.update(replace(self._inputs, text=text, selection=selection))

    def update_playback(
        self,
        text: str,
        playback: PlaybackBeatInfo | None,
        cursor_position: PlaybackBeatInfo | None,
        is_playing: bool,
        auto_scroll: bool | None = None,
    ) -> HighlightPlan:
        """A playback tick, or a change of the player's parked cursor / play state."""
        inputs = replace(
            self._inputs,
            text=text,
            playback=playback,
            cursor_position=cursor_position,
            is_playing=is_playing,
        )
        return self.update(inputs, auto_scroll=auto_scroll)

    def document_changed(self, changes: ChangeSet, text: str | None = None) -> None:
        """
        The document was edited with no new highlight instruction.

        Existing highlights are carried through *changes*; a layer whose
        ranges cannot be carried is cleared.
        """
        if text is not None:
            self._inputs = replace(self._inputs, text=text)
        self._enqueue(Transaction(changes=changes, doc_length=changes.new_length), None)

    def dispose(self) -> None:
        """Drop queued work; a pending flush becomes a no-op."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._buffer.clear()
        self._scroll = None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _host_attached(self) -> bool:
        try:
            return bool(self.host.is_attached())
        except Exception:
            logger.exception("Could not query editor attachment")
            return False

    def _enqueue(
        self,
        transaction: Transaction,
        scroll: ScrollTarget | None,
        replaces_scroll: bool = False,
    ) -> None:
        if not self._host_attached():
            logger.debug("Editor view detached; dropping highlight update")
            return

        self._buffer.append(transaction)
        if replaces_scroll:
            self._scroll = scroll
        if self._flush_handle is None:
            self._flush_handle = self.scheduler.call_soon(self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        transactions, self._buffer = self._buffer, []
        scroll, self._scroll = self._scroll, None

        if not self._host_attached():
            logger.debug("Editor view detached before flush; %d update(s) dropped", len(transactions))
            return

        for transaction in transactions:
            self._layers = {
                style: update_layer(style, current, transaction)
                for style, current in self._layers.items()
            }

        changed = [
            style
            for style in HighlightStyle
            if self._layers[style].decorations != self._applied[style].decorations
        ]
        # Clears before installs: never show two playback highlights at once.
        changed.sort(key=lambda style: bool(self._layers[style]))
        clear_failed = False
        for style in changed:
            decorations = self._layers[style]
            if decorations and clear_failed:
                logger.debug("Holding back %s highlight until pending clears succeed", style.value)
                continue
            try:
                self.host.apply_decorations(style, decorations)
            except Exception:
                logger.exception("Failed to apply %s highlight", style.value)
                clear_failed = clear_failed or not decorations
            else:
                self._applied[style] = decorations

        if scroll is not None:
            self._scroll_into_view(scroll)

    def _scroll_into_view(self, target: ScrollTarget) -> None:
        try:
            position = min(max(target.position, 0), self.host.document_length())
            viewport = self.host.viewport()
            coord_top = self.host.coords_at_pos(position)
            if target.policy.needs_scroll(coord_top, viewport):
                self.host.scroll_into_view(
                    ScrollRequest(position=position, y_margin=target.policy.margin_for(viewport))
                )
        except Exception:
            logger.exception("Failed to scroll highlight into view")


# ── Cursor tracking ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EditorUpdate:
    """What the editor reports after a transaction: the new text and the main cursor head."""

    text: str
    head: int
    selection_set: bool = False
    doc_changed: bool = False


class CursorTracker:
    """
    Feeds editor cursor moves back to the score, one bar change at a time.

    Bursts of updates are coalesced into one recomputation per animation
    frame, using the most recent snapshot. The callback only fires when the
    cursor lands in a different bar than last reported, which spares the
    score from re-colouring itself on every keystroke.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        on_cursor_change: Callable[[EditorCursorInfo], None],
        is_attached: Callable[[], bool] | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.on_cursor_change = on_cursor_change
        self._is_attached = is_attached

        self._latest: EditorUpdate | None = None
        self._from_doc_change = False
        self._frame: Handle | None = None
        self._last_emitted: EditorCursorInfo | None = None

    @property
    def last_emitted(self) -> EditorCursorInfo | None:
        return self._last_emitted

    def notify(self, update: EditorUpdate) -> None:
        if not update.selection_set and not update.doc_changed:
            return

        self._latest = update
        self._from_doc_change = self._from_doc_change or update.doc_changed
        if self._frame is None:
            self._frame = self.scheduler.request_frame(self._recompute)

    def reset(self) -> None:
        """Forget the last reported bar, so the next move is always reported."""
        self._last_emitted = None

    def dispose(self) -> None:
        if self._frame is not None:
            self._frame.cancel()
            self._frame = None
        self._latest = None
        self._from_doc_change = False

    def _recompute(self) -> None:
        self._frame = None
        update, self._latest = self._latest, None
        from_doc_change, self._from_doc_change = self._from_doc_change, False

        if update is None:
            return
        if self._is_attached is not None and not self._is_attached():
            return

        line, column = LineIndex(update.text).offset_to_line_col(update.head)
        cursor = replace(
            find_beat_at_position(update.text, line, column),
            from_doc_change=from_doc_change,
        )

        if self._last_emitted is not None and self._last_emitted.bar_index == cursor.bar_index:
            return
        self._last_emitted = cursor
        self.on_cursor_change(cursor)
