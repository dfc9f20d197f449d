"""
Main entry point for the image analyzer package.

Usage:
    python -m image_analyzer analyze IMAGE [OPTIONS]
    python -m image_analyzer server [OPTIONS]
"""

import sys


def main() -> int:
    """Main entry point."""
    from .cli import main as cli_main

    return cli_main()


if __name__ == "__main__":
    sys.exit(main())
