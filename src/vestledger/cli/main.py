"""
Main CLI entry point for vestledger.
"""

import logging
import sys

from vestledger.cli.vesting_commands import cli, console

logger = logging.getLogger(__name__)


def main():
    """Main CLI entry point"""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/]")
        sys.exit(130)


if __name__ == "__main__":
    main()
