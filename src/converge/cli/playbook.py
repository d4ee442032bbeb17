"""
Playbook CLI entrypoint for converge-playbook.

Usage:
    converge-playbook --version
    converge-playbook --help
    converge-playbook -i inventory.yml playbook.yml
"""

import argparse
import logging
import sys
import platform

from converge import __version__
from converge.config import load_config, set_config
from converge.engine.errors import ConfigError, ExitCode
from converge.logging import configure_logging, get_level_from_verbosity


logger = logging.getLogger(__name__)


def get_version_string() -> str:
    """Generate a detailed version string."""
    python_version = platform.python_version()
    os_info = f"{platform.system()} {platform.release()}"
    return (
        f"converge-playbook {__version__}\n"
        f"  python: {python_version}\n"
        f"  platform: {os_info}"
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for converge-playbook."""
    parser = argparse.ArgumentParser(
        prog="converge-playbook",
        description="Apply plays of desired-state tasks across an inventory",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  converge-playbook -i hosts.yml site.yml
  converge-playbook -i hosts.yml deploy.yml -t deploy -l web
  converge-playbook -i hosts.yml site.yml --timeout 600 -vv
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=get_version_string(),
    )

    parser.add_argument(
        "playbook",
        nargs="*",
        help="Playbook file(s) to run",
    )

    parser.add_argument(
        "-i", "--inventory",
        dest="inventory",
        default=None,
        help="Inventory file (YAML)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv)",
    )

    parser.add_argument(
        "-l", "--limit",
        dest="limit",
        default=None,
        help="Limit to specific hosts/groups",
    )

    parser.add_argument(
        "-t", "--tags",
        dest="tags",
        default=None,
        help="Only run tasks tagged with these values (comma-separated)",
    )

    parser.add_argument(
        "--skip-tags",
        dest="skip_tags",
        default=None,
        help="Skip tasks tagged with these values (comma-separated)",
    )

    parser.add_argument(
        "-f", "--forks",
        dest="forks",
        type=int,
        default=None,
        help="Maximum concurrent module invocations (default: 5)",
    )

    parser.add_argument(
        "--timeout",
        dest="timeout",
        type=float,
        default=None,
        help="Cancel a play that runs longer than this many seconds",
    )

    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Engine configuration file (default: $CONVERGE_CONFIG)",
    )

    parser.add_argument(
        "--log-file",
        dest="log_file",
        default=None,
        help="Also write log records to this file",
    )

    parser.add_argument(
        "--force-handlers",
        dest="force_handlers",
        action="store_true",
        default=None,
        help="Run notified handlers even on hosts that failed",
    )

    parser.add_argument(
        "--json",
        action="store_true",
        default=None,
        help="Output results in JSON format",
    )

    return parser


def main(args: list[str] | None = None) -> int:
    """Main entrypoint for converge-playbook CLI."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    # If no playbook provided, show help
    if not parsed.playbook:
        parser.print_help()
        return 0

    if not parsed.inventory:
        print("ERROR: Inventory (-i/--inventory) is required", file=sys.stderr)
        return ExitCode.PARSE_ERROR

    try:
        config = load_config(parsed.config).merged(
            forks=parsed.forks,
            timeout=parsed.timeout,
            tags=parsed.tags,
            skip_tags=parsed.skip_tags,
            limit=parsed.limit,
            force_handlers=parsed.force_handlers,
            verbosity=parsed.verbose or None,
            log_file=parsed.log_file,
            json_output=parsed.json,
        )
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return ExitCode.PARSE_ERROR
    set_config(config)

    configure_logging(get_level_from_verbosity(config.verbosity), log_file=config.log_file)
    logger.debug("Configuration: %s", config)

    from converge.engine.runner import PlaybookRunner

    runner = PlaybookRunner(
        inventory_source=parsed.inventory,
        playbook_paths=parsed.playbook,
        config=config,
    )

    return int(runner.run())


if __name__ == "__main__":
    sys.exit(main())
