"""
main.py — RelayMind Entry Point

Usage:
    relaymind "What's 2+2?"
    relaymind "Describe this photo" --image photo.jpg
    relaymind "Find cafes near me" --location 48.8606,2.3376
    relaymind "Compare Rust and Go for CLIs" --cycle-depth 3 --log-level DEBUG
    relaymind --status                       # credential pool health
    python -m relaymind --config path/to/config.yaml "..."
"""

from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _find_env_file() -> Optional[Path]:
    """First .env found walking up from the working directory."""
    for directory in (Path.cwd(), *Path.cwd().parents):
        candidate = directory / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="relaymind",
        description="RelayMind — multi-provider plan / execute / synthesize assistant",
    )
    parser.add_argument("request", nargs="?", default=None, help="The request to answer.")
    parser.add_argument(
        "--cycle-depth",
        type=int,
        default=None,
        choices=range(1, 6),
        metavar="N",
        help="Plan thoroughness, 1 (direct) to 5 (exhaustive). Default from config.",
    )
    parser.add_argument("--image", default=None, help="Path to an image to analyse.")
    parser.add_argument("--video", default=None, help="Path to a video to analyse.")
    parser.add_argument(
        "--location",
        default=None,
        metavar="LAT,LNG",
        help="Your location for map lookups, e.g. 48.86,2.34",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $RELAYMIND_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        default=False,
        help="Show credential pool health and exit.",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from relaymind.config.settings import ConfigError, load_settings
    from relaymind.observability.logger import get_logger, setup_logging

    env_file = _find_env_file()
    if env_file is not None:
        # Numbered keys (GEMINI_API_KEY_2, ...) are read from os.environ
        load_dotenv(dotenv_path=env_file)

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("relaymind.main")


def _load_attachment(path: str, kind: str):
    from relaymind.brain.types import Attachment

    p = Path(path).expanduser()
    mime, _ = mimetypes.guess_type(p.name)
    if not mime or not mime.startswith(f"{kind}/"):
        raise ValueError(f"{p.name} does not look like a {kind} file (detected: {mime or 'unknown'})")
    return Attachment(mime_type=mime, data=p.read_bytes(), name=p.name)


def _parse_location(raw: str):
    from relaymind.agent.types import Geolocation

    lat, _, lng = raw.partition(",")
    return Geolocation(latitude=float(lat), longitude=float(lng))


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    from relaymind.agent.orchestrator import Orchestrator
    from relaymind.interfaces.cli import CLIInterface, render_status

    orchestrator = Orchestrator.from_settings(settings)
    log.info(
        "relaymind.starting",
        families=settings.enabled_families,
        primary=settings.router.primary_family,
    )

    if args.status:
        render_status(orchestrator.router)
        return 0

    if not args.request:
        print("Usage: relaymind \"your request\"   (or relaymind --status)", file=sys.stderr)
        return 2

    try:
        attachments = []
        if args.image:
            attachments.append(_load_attachment(args.image, "image"))
        if args.video:
            attachments.append(_load_attachment(args.video, "video"))
        location = _parse_location(args.location) if args.location else None
    except (OSError, ValueError) as exc:
        print(f"\n❌  {exc}\n", file=sys.stderr)
        return 1

    cli_ui = CLIInterface(orchestrator)
    try:
        return await cli_ui.ask(
            args.request,
            attachments=attachments,
            cycle_depth=args.cycle_depth,
            location=location,
        )
    except asyncio.CancelledError:
        log.info("relaymind.cancelled")
        return 130


def cli() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    cli()
