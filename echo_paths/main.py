#!/usr/bin/env python3
"""
Echo Paths CLI

Command-line interface for narrating a confirmed journey as a continuous
audio story.

Usage:
    python -m echo_paths.main --from <start> --to <end> --duration <seconds> [options]
    echo-paths <route.json> [options]

Examples:
    # Fifteen-minute walk, noir style, offline
    echo-paths --from "Union Square" --to "Ferry Building" --duration 900 \\
        --mode walking --style noir --mock-llm

    # Route planner payload, writing segment audio and the transcript
    echo-paths route.json --output-dir story/

    # Stop at the first failed segment instead of substituting it
    echo-paths route.json --policy abort
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, FailurePolicy
from .llm_client import LLMClient, MockLLMClient
from .models import Journey, SegmentUpdate, StoryResult, StoryStyle, TravelMode, UpdateKind
from .pipeline import StoryPipeline
from .utils.helpers import format_duration, load_config, setup_logging


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="echo-paths",
        description="Narrate a journey as a continuous story paced to its travel time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --from "Union Square" --to "Ferry Building" --duration 900 --mock-llm
  %(prog)s route.json --style fantasy --output-dir story/
  %(prog)s route.json --json-output story.json --policy abort
        """
    )

    parser.add_argument(
        "route_file",
        nargs="?",
        default=None,
        help="Route planner JSON (startAddress, endAddress, durationSeconds, ...)"
    )

    journey = parser.add_argument_group("journey")
    journey.add_argument("--from", dest="start", help="Start location label")
    journey.add_argument("--to", dest="end", help="Destination label")
    journey.add_argument("--duration", type=float, help="Journey duration in seconds")
    journey.add_argument("--distance", type=float, default=None, help="Route length in meters")
    journey.add_argument(
        "--mode",
        choices=[mode.value.lower() for mode in TravelMode],
        default=None,
        help="Travel mode (default: driving)"
    )
    journey.add_argument(
        "--style",
        choices=[style.value.lower() for style in StoryStyle],
        default=None,
        help="Story style (default: default)"
    )
    journey.add_argument("--voice", default=None, help="Voice identifier (default: Kore)")

    parser.add_argument(
        "-c", "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in FailurePolicy],
        default=None,
        help="What to do when a segment keeps failing"
    )

    parser.add_argument(
        "-o", "--output-dir",
        type=str,
        default=None,
        help="Directory for segment WAV files and story.txt"
    )

    parser.add_argument(
        "--json-output",
        type=str,
        default=None,
        help="Output file for full JSON result with metadata"
    )

    parser.add_argument(
        "--mock-llm",
        action="store_true",
        help="Use mock LLM client (no endpoint or API key required)"
    )

    parser.add_argument(
        "-d", "--debug",
        action="store_true",
        help="Include debug logs in output"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging to console"
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all console output except errors"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser


def load_journey(args: argparse.Namespace) -> Journey:
    """Build the journey from a route file and/or command-line flags."""
    route: dict[str, Any] = {}

    if args.route_file:
        path = Path(args.route_file)
        if not path.exists():
            raise FileNotFoundError(f"Route file not found: {args.route_file}")
        with open(path, "r") as f:
            route = json.load(f)

    overrides = {
        "start_label": args.start,
        "end_label": args.end,
        "total_duration_seconds": args.duration,
        "distance_meters": args.distance,
        "travel_mode": args.mode,
        "style": args.style,
        "voice_identifier": args.voice,
    }
    route.update({key: value for key, value in overrides.items() if value is not None})

    if not args.route_file and args.duration is None:
        raise ValueError("Provide a route file or --from, --to and --duration")

    return Journey.from_route(route)


def build_config(args: argparse.Namespace) -> AppConfig:
    """Assemble and validate configuration once, at startup."""
    config = AppConfig.from_env()

    if args.config:
        config = AppConfig.from_dict(load_config(args.config), base=config)

    if args.policy:
        config.narration.failure_policy = FailurePolicy(args.policy)

    return config.validate(require_api_key=not args.mock_llm)


def resolve_log_level(args: argparse.Namespace, config: AppConfig) -> str:
    """-q and -v win over LOG_LEVEL / logging.level from the config."""
    if args.quiet:
        return "ERROR"
    if args.verbose:
        return "DEBUG"
    return config.log_level


class ConsoleConsumer:
    """Prints segments as they become playable."""

    def __init__(self, console: Console, quiet: bool = False):
        self.console = console
        self.quiet = quiet

    def __call__(self, update: SegmentUpdate) -> None:
        if self.quiet:
            return

        segment = update.segment
        if update.kind == UpdateKind.TEXT_READY:
            title = f"Segment {segment.index}"
            if segment.is_fallback:
                title += " [yellow](fallback)[/yellow]"
            self.console.print(Panel(segment.text, title=title, border_style="cyan"))
        elif update.kind == UpdateKind.AUDIO_READY:
            self.console.print(
                f"[dim]♪ Segment {segment.index} audio ready "
                f"({segment.audio.duration_seconds:.1f}s)[/dim]"
            )
        else:
            self.console.print(
                f"[yellow]⚠ Segment {segment.index} has no audio: {segment.audio_error}[/yellow]"
            )


def save_output(
    result: StoryResult,
    output_dir: str | None,
    json_output: str | None,
    include_debug: bool = False
) -> None:
    """Save output to files."""
    if output_dir:
        directory = Path(output_dir)
        directory.mkdir(parents=True, exist_ok=True)

        with open(directory / "story.txt", "w") as f:
            f.write(result.story_text)
            f.write("\n")

        for segment in result.segments:
            if segment.audio is not None:
                (directory / f"segment_{segment.index:03d}.wav").write_bytes(
                    segment.audio.to_wav_bytes()
                )

    if json_output:
        path = Path(json_output)
        path.parent.mkdir(parents=True, exist_ok=True)

        output_dict: dict[str, Any] = {
            "journey": result.journey.model_dump(mode="json"),
            "state": result.state.value,
            "failure": result.failure,
            "segment_count": result.segment_count,
            "outline": result.outline,
            "segments": [
                {
                    "index": segment.index,
                    "text": segment.text,
                    "is_fallback": segment.is_fallback,
                    "audio_seconds": segment.audio.duration_seconds if segment.audio else None,
                    "audio_error": segment.audio_error,
                }
                for segment in result.segments
            ],
            "generated_at": result.generated_at.isoformat(),
            "model_used": result.model_used,
            "processing_time_seconds": result.processing_time_seconds,
        }

        if include_debug:
            output_dict["debug_logs"] = result.debug_logs
            output_dict["warnings"] = result.warnings

        with open(path, "w") as f:
            json.dump(output_dict, f, indent=2, default=str)


def print_summary(console: Console, result: StoryResult, include_debug: bool = False) -> None:
    """Print the run summary."""
    table = Table(title="Story Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")

    journey = result.journey
    table.add_row("Journey", f"{journey.start_label} → {journey.end_label}")
    table.add_row("Mode", journey.travel_mode.value.lower())
    table.add_row("Duration", journey.duration_text)
    table.add_row("Style", journey.style.value.lower())
    table.add_row("Segments", f"{len(result.segments)}/{result.segment_count}")
    table.add_row("Audio", format_duration(result.total_audio_seconds))
    table.add_row("State", result.state.value)

    console.print(table)

    if result.failure:
        console.print(f"\n[bold red]{result.failure}[/bold red]")

    console.print(
        f"\n[dim]Generated in {result.processing_time_seconds or 0:.2f}s "
        f"using {result.model_used}[/dim]"
    )

    if include_debug and result.debug_logs:
        console.print("\n[bold yellow]Debug Logs:[/bold yellow]")
        for log in result.debug_logs:
            console.print(f"  [dim]{log}[/dim]")

    if result.warnings:
        console.print("\n[bold yellow]Warnings:[/bold yellow]")
        for warning in result.warnings:
            console.print(f"  [yellow]⚠ {warning}[/yellow]")


async def run_pipeline(
    journey: Journey,
    config: AppConfig,
    use_mock_llm: bool,
    consumer: ConsoleConsumer,
) -> StoryResult:
    """Run the pipeline for one journey."""
    llm_client = MockLLMClient(config) if use_mock_llm else LLMClient(config)

    async with llm_client:
        pipeline = StoryPipeline(config, llm_client)
        return await pipeline.run(journey, on_update=consumer)


def main() -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args()
    console = Console(stderr=args.quiet)

    try:
        config = build_config(args)
        log = setup_logging(level=resolve_log_level(args, config))
        if args.verbose:
            config.log_configuration()

        journey = load_journey(args)
        log.info("journey_confirmed", journey_id=journey.journey_id, seconds=journey.total_duration_seconds)

        result = asyncio.run(
            run_pipeline(journey, config, args.mock_llm, ConsoleConsumer(console, args.quiet))
        )

        save_output(result, args.output_dir, args.json_output, include_debug=args.debug)

        if not args.quiet:
            print_summary(console, result, include_debug=args.debug)

        return 0 if result.is_complete else 2

    except (FileNotFoundError, ConfigError, ValidationError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    except KeyboardInterrupt:
        console.print("[yellow]Cancelled[/yellow]")
        return 130

    except Exception as e:
        console.print(f"[red]Unexpected Error:[/red] {e}")
        if args.debug:
            console.print_exception()
        return 3


if __name__ == "__main__":
    sys.exit(main())
