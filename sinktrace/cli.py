"""sinktrace CLI - Main entry point and command registration hub."""
# ruff: noqa: E402 - Intentional lazy loading: commands imported after cli group definition

import click

from sinktrace import __version__
from sinktrace.utils.logging import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="sinktrace")
@click.help_option("-h", "--help")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def cli(verbose):
    """sinktrace - Source-to-sink taint analysis

    \b
    QUICK START:
      sinktrace scan program.json --rules rules.yml
      sinktrace rules rules.yml

    \b
    For detailed options: sinktrace <command> --help"""
    if verbose:
        configure_logging(level="DEBUG")


from sinktrace.commands.rules import rules_command
from sinktrace.commands.scan import scan_command

cli.add_command(scan_command, name="scan")
cli.add_command(rules_command, name="rules")


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
