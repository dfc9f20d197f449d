"""Command line interface for the image analyzer."""

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from typing import List, Optional

import aiofiles

from .analysis import FORMATS, analyze_image, render_summary
from .config import DEFAULT_CONFIG_FILENAME, Settings, load_config
from .exceptions import AnalyzerError
from .log import setup_logging

logger = logging.getLogger(__name__)


def create_main_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="image-analyzer",
        description="Container image analyzer: pulls an image and inspects its filesystem",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Analyze an image and write a JSON report
  image-analyzer analyze python:3.12-slim -o report.json

  # YAML report, only look for a few commands
  image-analyzer analyze nginx:alpine -f yaml --no-check-python --commands bash,nginx

  # Serve POST /analyze
  image-analyzer -c config.yaml server --port 8080
""",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_FILENAME,
        help="Configuration file (default: %(default)s)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    analyze = subparsers.add_parser("analyze", help="Analyze a container image")
    analyze.add_argument("image", help="Image reference (e.g. python:3.12-slim)")
    analyze.add_argument("-o", "--output", help="Report file (default: report.<format>)")
    analyze.add_argument(
        "-f", "--format", choices=FORMATS, default="json", help="Report format"
    )
    analyze.add_argument(
        "--check-os",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Read the os-release file",
    )
    analyze.add_argument(
        "--check-python",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="List installed Python distributions",
    )
    analyze.add_argument(
        "--check-tools",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Look for common tools",
    )
    analyze.add_argument(
        "--commands", help="Comma separated extra commands to look for"
    )
    analyze.add_argument(
        "-d", "--unpack-dir", help="Parent directory for temporary image roots"
    )
    analyze.add_argument(
        "--timeout", type=float, help="Pull timeout in seconds (0 disables it)"
    )

    server = subparsers.add_parser("server", help="Run the HTTP analysis server")
    server.add_argument("--host", help="Listen address")
    server.add_argument("--port", type=int, help="Listen port")

    return parser


def _apply_analyze_args(settings: Settings, args: argparse.Namespace) -> None:
    analyze = settings.analyze
    if args.check_os is not None:
        analyze.check_os_info = args.check_os
    if args.check_python is not None:
        analyze.check_python_packages = args.check_python
    if args.check_tools is not None:
        analyze.check_common_tools = args.check_tools
    if args.commands is not None:
        analyze.specific_commands = [
            c.strip() for c in args.commands.split(",") if c.strip()
        ]
    if args.unpack_dir:
        analyze.unpack_dir = args.unpack_dir
    if args.timeout is not None:
        analyze.pull_timeout = args.timeout or None


async def write_report(path: str, content: str) -> None:
    """Write a rendered report, creating parent directories."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)


async def _analyze(settings: Settings, image_ref: str, fmt: str, output: str) -> None:
    summary = await analyze_image(image_ref, settings)
    await write_report(output, render_summary(summary, fmt))


def run_analyze(settings: Settings, args: argparse.Namespace) -> int:
    _apply_analyze_args(settings, args)
    settings.ensure_dirs()
    output = args.output or f"report.{args.format}"
    asyncio.run(_analyze(settings, args.image, args.format, output))
    logger.info("Report written to %s", os.path.abspath(output))
    return 0


def run_server(settings: Settings, args: argparse.Namespace) -> int:
    from .server import serve

    server = settings.server
    settings.server = dataclasses.replace(
        server,
        host=args.host or server.host,
        port=args.port if args.port is not None else server.port,
    )
    settings.ensure_dirs()
    serve(settings)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_main_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    command_handlers = {
        "analyze": run_analyze,
        "server": run_server,
    }

    try:
        settings = load_config(args.config)
        setup_logging(settings.log)
        return command_handlers[args.command](settings, args)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130
    except (AnalyzerError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
