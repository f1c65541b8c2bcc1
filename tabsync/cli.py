"""TabSync CLI entry point."""

import logging
import sys
from pathlib import Path

import click

from tabsync import __version__
from tabsync.position_mapper import (
    find_beat_at_position,
    get_bar_ranges,
    map_playback_to_code_range,
    map_selection_to_code_range,
)
from tabsync.position_models import CodeRange, PlaybackBeatInfo, ScoreSelectionInfo
from tabsync.position_tokenizer import parse_beat_positions

SNIPPET_WIDTH = 40


def _read_source(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def _snippet(text: str, start: int, end: int) -> str:
    """Collapse whitespace in ``text[start:end]`` and cap it at SNIPPET_WIDTH characters."""
    flat = " ".join(text[start:end].split())
    if len(flat) > SNIPPET_WIDTH:
        return flat[: SNIPPET_WIDTH - 3] + "..."
    return flat


def _format_range(text: str, code_range: CodeRange) -> str:
    return (
        f"{code_range.start_line}:{code_range.start_column}-"
        f"{code_range.end_line}:{code_range.end_column}  "
        f"[{code_range.start}, {code_range.end})  {_snippet(text, code_range.start, code_range.end)}"
    )


def _parse_bar_beat(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> tuple[int, int] | None:
    """Parse ``BAR`` or ``BAR:BEAT`` (beat defaults to 0)."""
    if value is None:
        return None
    bar_text, _, beat_text = value.partition(":")
    try:
        bar = int(bar_text)
        beat = int(beat_text) if beat_text else 0
    except ValueError:
        raise click.BadParameter(f"'{value}' is not BAR or BAR:BEAT.") from None
    if bar < 0 or beat < 0:
        raise click.BadParameter("Bar and beat indices are 0-based and cannot be negative.")
    return bar, beat


source_argument = click.argument(
    "source", type=click.Path(exists=True, dir_okay=False, readable=True)
)


# ── CLI group ──────────────────────────────────────────────────────────────────

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="tabsync")
@click.option("--verbose", "-v", is_flag=True, help="Log debug messages to stderr.")
def main(verbose: bool) -> None:
    """Map tablature source text to score bars and beats.

    All lines, columns, bars and beats are 0-based.
    """
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


# ── beats subcommand ───────────────────────────────────────────────────────────

@main.command()
@source_argument
@click.option(
    "--bar",
    type=click.IntRange(min=0),
    default=None,
    help="Only list the beats of this bar.",
)
def beats(source: str, bar: int | None) -> None:
    """
    List every beat found in SOURCE with its bar, beat and text span.

    \b
    Examples:
      tabsync beats song.atex
      tabsync beats song.atex --bar 3
    """
    text = _read_source(source)
    parsed = parse_beat_positions(text)
    listed = parsed.beats if bar is None else tuple(parsed.beats_in_bar(bar))

    click.echo(f"  Content starts at offset {parsed.content_start}")
    click.echo(f"  {len(parsed.beats)} beat(s) in {parsed.bar_count} bar(s)")
    click.echo()
    for beat in listed:
        click.echo(
            f"  {beat.bar_index:>4}  {beat.beat_index:>3}  "
            f"{beat.start_line:>4}:{beat.start_column:<4} "
            f"{_snippet(text, beat.start_offset, beat.end_offset)}"
        )


# ── locate subcommand ──────────────────────────────────────────────────────────

@main.command()
@source_argument
@click.argument("line", type=click.IntRange(min=0))
@click.argument("column", type=click.IntRange(min=0))
def locate(source: str, line: int, column: int) -> None:
    """
    Show which beat the cursor at LINE, COLUMN belongs to.

    \b
    Examples:
      tabsync locate song.atex 4 12
    """
    text = _read_source(source)
    cursor = find_beat_at_position(text, line, column)
    if not cursor.is_mapped:
        click.echo(f"  ERROR: {line}:{column} is not inside any beat.", err=True)
        sys.exit(1)
    click.echo(f"  Bar {cursor.bar_index}, beat {cursor.beat_index}")


# ── select subcommand ──────────────────────────────────────────────────────────

@main.command()
@source_argument
@click.option(
    "--start",
    required=True,
    callback=_parse_bar_beat,
    metavar="BAR[:BEAT]",
    help="First selected beat.",
)
@click.option(
    "--end",
    default=None,
    callback=_parse_bar_beat,
    metavar="BAR[:BEAT]",
    help="Last selected beat. Defaults to --start.",
)
def select(source: str, start: tuple[int, int], end: tuple[int, int] | None) -> None:
    """
    Show the source text a score selection corresponds to.

    \b
    Examples:
      tabsync select song.atex --start 2:1
      tabsync select song.atex --start 2 --end 4:3
    """
    text = _read_source(source)
    end = end if end is not None else start
    selection = ScoreSelectionInfo(
        start_bar_index=start[0],
        start_beat_index=start[1],
        end_bar_index=end[0],
        end_beat_index=end[1],
    )
    code_range = map_selection_to_code_range(text, selection)
    if code_range is None:
        click.echo("  ERROR: Selection does not map to any source text.", err=True)
        sys.exit(1)
    click.echo(f"  {_format_range(text, code_range)}")


# ── playback subcommand ────────────────────────────────────────────────────────

@main.command()
@source_argument
@click.argument("bar", type=click.IntRange(min=0))
@click.argument("beat", type=click.IntRange(min=0), default=0)
def playback(source: str, bar: int, beat: int) -> None:
    """
    Show the text the live-playback highlight covers at BAR, BEAT.

    \b
    Examples:
      tabsync playback song.atex 7 2
    """
    text = _read_source(source)
    code_range = map_playback_to_code_range(text, PlaybackBeatInfo(bar_index=bar, beat_index=beat))
    if code_range is None:
        click.echo(f"  ERROR: Bar {bar} has no beats.", err=True)
        sys.exit(1)
    click.echo(f"  {_format_range(text, code_range)}")


# ── bar subcommand ─────────────────────────────────────────────────────────────

@main.command()
@source_argument
@click.argument("bar", type=click.IntRange(min=0))
def bar(source: str, bar: int) -> None:
    """
    Show the ranges the parked-cursor highlight covers for BAR.

    \b
    Examples:
      tabsync bar song.atex 3
    """
    text = _read_source(source)
    ranges = get_bar_ranges(text, bar)
    if not ranges:
        click.echo(f"  ERROR: Bar {bar} has no beats.", err=True)
        sys.exit(1)
    for code_range in ranges:
        click.echo(f"  {_format_range(text, code_range)}")
