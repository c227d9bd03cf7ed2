"""Mount commands: mount, umount, status."""

from __future__ import annotations

import json
import sys

import click
from rich.panel import Panel
from rich.table import Table

from ._common import console, resolve_config

_config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="YAML config file (default: $PASSTHROUGHFS_HOME/config.yaml).",
)

_mount_option = click.option(
    "--mount",
    "-m",
    "mount_point",
    default=None,
    type=click.Path(file_okay=False),
    help="The path of the filesystem's mount.  [default: /tmp/fsmnt]",
)


def register_mount_commands(main: click.Group) -> None:
    """Register the mount, umount and status commands."""

    @main.command("mount")
    @_mount_option
    @click.option(
        "--passthrough",
        "-p",
        "source",
        default=None,
        type=click.Path(file_okay=False),
        help="The directory to pass VFS calls through to.  [default: /tmp/fsdata]",
    )
    @click.option("--debug", "-d", is_flag=True, default=False, help="Run filesystem in debug mode.")
    @click.option(
        "--foreground", "-f", is_flag=True, default=False, help="Run filesystem in foreground."
    )
    @click.option(
        "--multithreaded",
        "-t",
        is_flag=True,
        default=False,
        help="Run filesystem in multithreaded mode.",
    )
    @click.option(
        "--allow-other", is_flag=True, default=False, help="Let other users access the mount."
    )
    @_config_option
    def mount_cmd(
        mount_point, source, debug, foreground, multithreaded, allow_other, config_path
    ):
        """Mount the source directory at the mount point.

        \b
        Both directories are created if they do not exist.

        \b
        Examples:

            passthroughfs mount

            passthroughfs mount -p /srv/data -m /mnt/mirror

            passthroughfs mount --foreground --debug
        """
        from ..fuse_mount import MountDaemon

        config = resolve_config(
            config_path,
            mount_point=mount_point,
            source=source,
            debug=debug,
            foreground=foreground,
            multithreaded=multithreaded,
            allow_other=allow_other,
        )
        daemon = MountDaemon(config)

        if config.foreground:
            console.print(
                f"[bold cyan]Mounting [white]{config.source}[/] at [white]{config.mount_point}[/] "
                f"[dim](foreground, Ctrl-C to unmount)[/]"
            )
        else:
            console.print(
                f"[bold cyan]Mounting [white]{config.source}[/] at [white]{config.mount_point}[/] ..."
            )

        ok = daemon.start()

        if ok and not config.foreground:
            console.print("[green]Mounted.[/] [dim]Unmount with: passthroughfs umount[/]")
        elif not ok:
            console.print("[bold red]Mount failed.[/] Check logs or try --foreground for details.")
            sys.exit(1)

    @main.command("umount")
    @_mount_option
    @_config_option
    def umount_cmd(mount_point, config_path):
        """Unmount a passthrough filesystem.

        \b
        Example:

            passthroughfs umount -m /mnt/mirror
        """
        from ..fuse_mount import MountDaemon

        config = resolve_config(config_path, mount_point=mount_point)
        daemon = MountDaemon(config)
        console.print(f"[bold cyan]Unmounting {config.mount_point} ...[/]")

        if daemon.stop():
            console.print("[green]Unmounted.[/]")
        else:
            console.print(
                "[bold red]Unmount failed.[/] "
                f"[dim]Try manually: fusermount -u {config.mount_point}[/]"
            )
            sys.exit(1)

    @main.command("status")
    @_mount_option
    @_config_option
    @click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
    def status_cmd(mount_point, config_path, as_json):
        """Show whether the passthrough filesystem is mounted.

        \b
        Example:

            passthroughfs status --json
        """
        from ..fuse_mount import MountDaemon

        config = resolve_config(config_path, mount_point=mount_point)
        status = MountDaemon(config).status()

        if as_json:
            click.echo(json.dumps(status, indent=2))
            return

        mounted = status.get("mounted", False)
        icon = "[bold green]MOUNTED[/]" if mounted else "[bold red]NOT MOUNTED[/]"
        pid = status.get("pid")
        updated = status.get("updated_at")

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="dim")
        table.add_column("Value")

        table.add_row("Status", icon)
        table.add_row("Mount point", str(status.get("mount_point", "")))
        table.add_row("Source", str(status.get("source", "")))
        table.add_row("PID", str(pid) if pid else "[dim]-[/]")
        table.add_row("Last updated", updated or "[dim]-[/]")

        console.print()
        console.print(Panel(table, title="[bold]Passthrough Filesystem Status[/]", border_style="cyan"))
        console.print()
