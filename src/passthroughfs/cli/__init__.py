"""
passthroughfs CLI — mount, unmount and inspect passthrough mounts.

The main Click group is defined here and the commands are registered
from their own modules.

Entry point: passthroughfs.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="passthroughfs")
def main():
    """passthroughfs — mirror a directory through FUSE.

    Every operation on the mount point is relayed to the source directory.
    """


from .mount import register_mount_commands

register_mount_commands(main)
