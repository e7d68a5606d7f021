"""PortSync CLI main entry point."""

import click

from portsync import __version__
from portsync.cli.commands import replay_command


@click.group()
@click.version_option(version=__version__)
def main():
    """PortSync - Portfolio Position Reconciliation"""
    pass


main.add_command(replay_command)


if __name__ == "__main__":
    main()
