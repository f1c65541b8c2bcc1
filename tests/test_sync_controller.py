"""Unit tests for the editor sync controller and the cursor tracking feed."""

import logging

import pytest

from tabsync.decorations import ChangeSet, DecorationSet, HighlightStyle, TextChange
from tabsync.position_models import (
    SENTINEL_INDEX,
    EditorCursorInfo,
    PlaybackBeatInfo,
    ScoreSelectionInfo,
)
from tabsync.scheduling import ManualScheduler
from tabsync.sync_controller import (
    PARKED_SCROLL,
    PLAYBACK_SCROLL,
    CursorTracker,
    EditorHost,
    EditorSyncController,
    EditorUpdate,
    ScrollRequest,
    SyncInputs,
    SyncState,
    Viewport,
    plan_highlights,
    resolve_state,
)

TEXT = '\\title "Demo"\n.\n0.4 1.4 | 2.4 3.4 |\n(0.1 1.1)\n5.4 |'


class FakeHost(EditorHost):
    """Records everything the controller asks of the editor."""

    def __init__(self, text: str = TEXT, coord_top: float | None = 100.0) -> None:
        self.text = text
        self.coord_top = coord_top
        self.attached = True
        self.fail_apply = False
        self.applied: list[tuple[HighlightStyle, list[tuple[int, int]]]] = []
        self.scrolls: list[ScrollRequest] = []

    def is_attached(self) -> bool:
        return self.attached

    def document_length(self) -> int:
        return len(self.text)

    def apply_decorations(self, style: HighlightStyle, decorations: DecorationSet) -> None:
        if self.fail_apply:
            raise RuntimeError("editor is mid-transaction")
        self.applied.append((style, decorations.spans))

    def coords_at_pos(self, position: int) -> float | None:
        return self.coord_top

    def viewport(self) -> Viewport:
        return Viewport(top=0.0, height=400.0)

    def scroll_into_view(self, request: ScrollRequest) -> None:
        self.scrolls.append(request)


def _controller(host: FakeHost | None = None) -> tuple[EditorSyncController, FakeHost, ManualScheduler]:
    host = host or FakeHost()
    scheduler = ManualScheduler()
    return EditorSyncController(host, scheduler), host, scheduler


def _span_text(controller: EditorSyncController, style: HighlightStyle) -> list[str]:
    return [TEXT[start:end] for start, end in controller.layer(style).spans]


def _single_beat(bar_index: int, beat_index: int) -> ScoreSelectionInfo:
    return ScoreSelectionInfo(
        start_bar_index=bar_index,
        start_beat_index=beat_index,
        end_bar_index=bar_index,
        end_beat_index=beat_index,
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    ("inputs", "expected"),
    [
        (SyncInputs(text=TEXT), SyncState.IDLE),
        (SyncInputs(text=TEXT, selection=_single_beat(0, 0)), SyncState.SELECTION_ACTIVE),
        (SyncInputs(text=TEXT, cursor_position=PlaybackBeatInfo(1, 0)), SyncState.CURSOR_PARKED),
        (
            SyncInputs(text=TEXT, playback=PlaybackBeatInfo(1, 0), is_playing=True),
            SyncState.PLAYBACK_ACTIVE,
        ),
        (SyncInputs(text=TEXT, is_playing=True), SyncState.IDLE),
        (
            SyncInputs(
                text=TEXT,
                selection=_single_beat(0, 0),
                cursor_position=PlaybackBeatInfo(1, 0),
                playback=PlaybackBeatInfo(1, 1),
                is_playing=True,
            ),
            SyncState.PLAYBACK_ACTIVE,
        ),
        (
            SyncInputs(text=TEXT, selection=_single_beat(0, 0), cursor_position=PlaybackBeatInfo(1, 0)),
            SyncState.SELECTION_ACTIVE,
        ),
    ],
)
def test_resolve_state(inputs: SyncInputs, expected: SyncState) -> None:
    assert resolve_state(inputs) is expected


def test_plan_clears_before_installing() -> None:
    plan = plan_highlights(SyncInputs(text=TEXT, playback=PlaybackBeatInfo(0, 1), is_playing=True))
    assert [effect.clears for effect in plan.effects] == [True, True, False]
    assert plan.effects[-1].style is HighlightStyle.PLAYBACK
    assert plan.scroll is not None
    assert plan.scroll.policy is PLAYBACK_SCROLL


def test_plan_for_parked_cursor_scrolls_with_parked_policy() -> None:
    plan = plan_highlights(SyncInputs(text=TEXT, cursor_position=PlaybackBeatInfo(2, 0)))
    assert plan.scroll is not None
    assert plan.scroll.policy is PARKED_SCROLL
    assert plan.scroll.position == TEXT.index("(0.1")


def test_plan_for_unmappable_playback_clears_everything() -> None:
    plan = plan_highlights(SyncInputs(text=TEXT, playback=PlaybackBeatInfo(9, 0), is_playing=True))
    assert all(effect.clears for effect in plan.effects)
    assert plan.scroll is None


# ---------------------------------------------------------------------------
# Safe dispatch
# ---------------------------------------------------------------------------

def test_updates_are_deferred_to_next_turn() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(0, 1))

    assert host.applied == []
    assert controller.has_pending
    assert scheduler.pending_tasks == 1

    scheduler.run_pending()
    assert _span_text(controller, HighlightStyle.SELECTION) == ["1.4"]
    assert host.applied == [(HighlightStyle.SELECTION, controller.layer(HighlightStyle.SELECTION).spans)]
    assert not controller.has_pending


def test_burst_of_updates_is_flushed_once() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(0, 0))
    controller.update_selection(TEXT, _single_beat(1, 1))

    assert scheduler.pending_tasks == 1
    scheduler.run_pending()
    assert _span_text(controller, HighlightStyle.SELECTION) == ["3.4"]
    assert len(host.applied) == 1


def test_detached_editor_drops_updates() -> None:
    controller, host, scheduler = _controller()
    host.attached = False
    controller.update_selection(TEXT, _single_beat(0, 0))

    assert scheduler.pending_tasks == 0
    assert not controller.has_pending


def test_editor_detached_before_flush_is_left_alone() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(0, 0))
    host.attached = False
    scheduler.run_pending()

    assert host.applied == []
    assert not controller.layer(HighlightStyle.SELECTION)


def test_dispose_cancels_pending_flush() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(0, 0))
    controller.dispose()

    assert scheduler.run_pending() == 0
    assert host.applied == []


def test_host_errors_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    controller, host, scheduler = _controller()
    host.fail_apply = True
    controller.update_selection(TEXT, _single_beat(0, 0))

    with caplog.at_level(logging.ERROR, logger="tabsync.sync_controller"):
        scheduler.run_pending()
    assert "Failed to apply selection highlight" in caplog.text


def test_failed_clear_is_retried_on_next_flush() -> None:
    controller, host, scheduler = _controller()
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 0), is_playing=False)
    scheduler.run_pending()

    host.fail_apply = True
    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), PlaybackBeatInfo(1, 0), is_playing=True)
    scheduler.run_pending()

    host.fail_apply = False
    host.applied.clear()
    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), PlaybackBeatInfo(1, 0), is_playing=True)
    scheduler.run_pending()

    assert host.applied[0] == (HighlightStyle.PLAYBACK_BAR, [])
    assert host.applied[1][0] is HighlightStyle.PLAYBACK


class _FailingClearHost(FakeHost):
    def apply_decorations(self, style: HighlightStyle, decorations: DecorationSet) -> None:
        if style is HighlightStyle.PLAYBACK_BAR and not decorations:
            raise RuntimeError("editor is mid-transaction")
        super().apply_decorations(style, decorations)


def test_install_is_held_back_while_a_clear_fails() -> None:
    controller, host, scheduler = _controller(_FailingClearHost())
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 0), is_playing=False)
    scheduler.run_pending()
    host.applied.clear()

    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), PlaybackBeatInfo(1, 0), is_playing=True)
    scheduler.run_pending()

    assert host.applied == []
    assert controller.layer(HighlightStyle.PLAYBACK)


def test_clearing_selection_clears_layer() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(0, 0))
    scheduler.run_pending()
    controller.update_selection(TEXT, None)
    scheduler.run_pending()

    assert controller.state is SyncState.IDLE
    assert not controller.layer(HighlightStyle.SELECTION)
    assert host.applied[-1] == (HighlightStyle.SELECTION, [])


# ---------------------------------------------------------------------------
# Playback and parked cursor
# ---------------------------------------------------------------------------

def test_parked_cursor_highlights_whole_bar() -> None:
    controller, host, scheduler = _controller()
    controller.update_playback(TEXT, None, PlaybackBeatInfo(2, 0), is_playing=False)
    scheduler.run_pending()

    assert controller.state is SyncState.CURSOR_PARKED
    assert _span_text(controller, HighlightStyle.PLAYBACK_BAR) == ["(0.1 1.1)", "5.4"]


def test_starting_playback_clears_parked_bar_first() -> None:
    controller, host, scheduler = _controller()
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 0), is_playing=False)
    scheduler.run_pending()
    host.applied.clear()

    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), PlaybackBeatInfo(1, 0), is_playing=True)
    scheduler.run_pending()

    assert [style for style, _ in host.applied] == [HighlightStyle.PLAYBACK_BAR, HighlightStyle.PLAYBACK]
    assert host.applied[0] == (HighlightStyle.PLAYBACK_BAR, [])
    assert _span_text(controller, HighlightStyle.PLAYBACK) == ["2.4"]


def test_parked_bar_is_empty_on_every_playback_tick() -> None:
    controller, host, scheduler = _controller()
    cursor = PlaybackBeatInfo(0, 0)
    ticks = [PlaybackBeatInfo(0, 0), PlaybackBeatInfo(0, 1), PlaybackBeatInfo(1, 0), PlaybackBeatInfo(2, 0)]
    for tick in ticks:
        controller.update_playback(TEXT, tick, cursor, is_playing=True)
        scheduler.run_pending()
        assert controller.state is SyncState.PLAYBACK_ACTIVE
        assert not controller.layer(HighlightStyle.PLAYBACK_BAR)
        assert controller.layer(HighlightStyle.PLAYBACK)


def test_pausing_moves_highlight_to_parked_bar() -> None:
    controller, host, scheduler = _controller()
    controller.update_playback(TEXT, PlaybackBeatInfo(1, 1), PlaybackBeatInfo(1, 1), is_playing=True)
    scheduler.run_pending()
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 1), is_playing=False)
    scheduler.run_pending()

    assert not controller.layer(HighlightStyle.PLAYBACK)
    assert _span_text(controller, HighlightStyle.PLAYBACK_BAR) == ["2.4 3.4"]


def test_selection_keeps_inputs_from_playback_updates() -> None:
    controller, host, scheduler = _controller()
    controller.update_playback(TEXT, None, PlaybackBeatInfo(2, 0), is_playing=False)
    controller.update_selection(TEXT, _single_beat(0, 0))
    scheduler.run_pending()

    assert controller.inputs.cursor_position == PlaybackBeatInfo(2, 0)
    assert controller.state is SyncState.SELECTION_ACTIVE
    assert _span_text(controller, HighlightStyle.SELECTION) == ["0.4"]
    assert not controller.layer(HighlightStyle.PLAYBACK_BAR)


# ---------------------------------------------------------------------------
# Auto-scroll
# ---------------------------------------------------------------------------

def test_playback_inside_comfort_band_does_not_scroll() -> None:
    controller, host, scheduler = _controller(FakeHost(coord_top=100.0))
    controller.update_playback(TEXT, PlaybackBeatInfo(0, 0), None, is_playing=True)
    scheduler.run_pending()
    assert host.scrolls == []


@pytest.mark.parametrize("coord_top", [None, 20.0, 300.0])
def test_playback_outside_comfort_band_scrolls(coord_top: float | None) -> None:
    controller, host, scheduler = _controller(FakeHost(coord_top=coord_top))
    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), None, is_playing=True)
    scheduler.run_pending()
    assert host.scrolls == [ScrollRequest(position=TEXT.index("2.4"), y_margin=50)]


def test_parked_cursor_uses_wider_band_and_third_of_viewport() -> None:
    controller, host, scheduler = _controller(FakeHost(coord_top=300.0))
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 0), is_playing=False)
    scheduler.run_pending()
    assert host.scrolls == []

    host.coord_top = 350.0
    controller.update_playback(TEXT, None, PlaybackBeatInfo(1, 0), is_playing=False)
    scheduler.run_pending()
    assert host.scrolls == [ScrollRequest(position=TEXT.index("2.4"), y_margin=132)]


def test_auto_scroll_can_be_disabled() -> None:
    controller, host, scheduler = _controller(FakeHost(coord_top=None))
    controller.update_playback(TEXT, PlaybackBeatInfo(1, 0), None, is_playing=True, auto_scroll=False)
    scheduler.run_pending()
    assert host.scrolls == []
    assert controller.layer(HighlightStyle.PLAYBACK)


# ---------------------------------------------------------------------------
# Document edits
# ---------------------------------------------------------------------------

def test_edit_before_highlight_remaps_it() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(1, 0))
    scheduler.run_pending()
    before = controller.layer(HighlightStyle.SELECTION).spans[0]

    edited = TEXT[:16] + "r " + TEXT[16:]
    controller.document_changed(ChangeSet.of(len(TEXT), TextChange(16, 16, 2)), text=edited)
    scheduler.run_pending()

    assert controller.layer(HighlightStyle.SELECTION).spans == [(before[0] + 2, before[1] + 2)]
    assert controller.inputs.text == edited


def test_edit_destroying_highlight_clears_layer() -> None:
    controller, host, scheduler = _controller()
    controller.update_selection(TEXT, _single_beat(1, 0))
    scheduler.run_pending()
    start, end = controller.layer(HighlightStyle.SELECTION).spans[0]

    controller.document_changed(ChangeSet.of(len(TEXT), TextChange(start - 1, end + 1)))
    scheduler.run_pending()

    assert not controller.layer(HighlightStyle.SELECTION)
    assert host.applied[-1] == (HighlightStyle.SELECTION, [])


# ---------------------------------------------------------------------------
# CursorTracker
# ---------------------------------------------------------------------------

def _tracker() -> tuple[CursorTracker, list[EditorCursorInfo], ManualScheduler]:
    scheduler = ManualScheduler()
    emitted: list[EditorCursorInfo] = []
    return CursorTracker(scheduler, emitted.append), emitted, scheduler


def test_tracker_coalesces_burst_into_one_frame() -> None:
    tracker, emitted, scheduler = _tracker()
    for needle in ("0.4", "1.4", "5.4"):
        tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index(needle), selection_set=True))

    assert scheduler.pending_frames == 1
    assert emitted == []
    scheduler.run_frame()
    assert [(c.bar_index, c.beat_index) for c in emitted] == [(2, 1)]


def test_tracker_ignores_updates_without_cursor_or_doc_change() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("0.4")))
    assert scheduler.pending_frames == 0


def test_tracker_only_reports_bar_changes() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("0.4"), selection_set=True))
    scheduler.run_frame()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("1.4"), selection_set=True))
    scheduler.run_frame()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("3.4"), selection_set=True))
    scheduler.run_frame()

    assert [(c.bar_index, c.beat_index) for c in emitted] == [(0, 0), (1, 1)]
    assert tracker.last_emitted == emitted[-1]


def test_tracker_reset_reports_same_bar_again() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("0.4"), selection_set=True))
    scheduler.run_frame()
    tracker.reset()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("1.4"), selection_set=True))
    scheduler.run_frame()
    assert len(emitted) == 2


def test_tracker_flags_document_changes_in_burst() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("2.4"), doc_changed=True))
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("2.4"), selection_set=True))
    scheduler.run_frame()
    assert emitted[0].from_doc_change


def test_tracker_reports_header_as_sentinel() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=3, selection_set=True))
    scheduler.run_frame()
    assert emitted[0].bar_index == SENTINEL_INDEX
    assert (emitted[0].line, emitted[0].column) == (0, 3)
    assert not emitted[0].from_doc_change


def test_tracker_skips_detached_editor() -> None:
    scheduler = ManualScheduler()
    emitted: list[EditorCursorInfo] = []
    tracker = CursorTracker(scheduler, emitted.append, is_attached=lambda: False)
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("0.4"), selection_set=True))
    scheduler.run_frame()
    assert emitted == []


def test_tracker_dispose_cancels_frame() -> None:
    tracker, emitted, scheduler = _tracker()
    tracker.notify(EditorUpdate(text=TEXT, head=TEXT.index("0.4"), selection_set=True))
    tracker.dispose()
    assert scheduler.run_frame() == 0
    assert emitted == []
