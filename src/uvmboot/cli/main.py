"""uvmboot CLI: boot utility VMs in bulk."""

from __future__ import annotations

from dataclasses import dataclass

import click

from uvmboot.cli.commands.lcow import lcow
from uvmboot.config import BootOptions, Tunable


@dataclass
class GlobalOptions:
    """Flags given before the subcommand."""

    parallel: int
    count: int
    measure: bool
    debug: bool
    boot_options: BootOptions


@click.group()
@click.option("--cpus", type=int, default=None, help="Number of CPUs on the UVM. Uses the runtime default if not specified")
@click.option("--memory", type=int, default=None, help="Amount of memory on the UVM, in MB. Uses the runtime default if not specified")
@click.option("--measure", is_flag=True, help="Measure wall clock time of the UVM run")
@click.option("--parallel", type=int, default=1, show_default=True, help="Number of UVMs to boot in parallel")
@click.option("--count", type=int, default=1, show_default=True, help="Total number of UVMs to run")
@click.option("--allow-overcommit/--no-allow-overcommit", default=None, help="Allow memory overcommit on the UVM")
@click.option(
    "--enable-deferred-commit/--no-enable-deferred-commit",
    default=None,
    help="Enable deferred commit on the UVM",
)
@click.option("--debug", is_flag=True, help="Enable debug level logging")
@click.pass_context
def cli(
    ctx: click.Context,
    cpus: int | None,
    memory: int | None,
    measure: bool,
    parallel: int,
    count: int,
    allow_overcommit: bool | None,
    enable_deferred_commit: bool | None,
    debug: bool,
) -> None:
    """Boot a utility VM."""
    ctx.obj = GlobalOptions(
        parallel=parallel,
        count=count,
        measure=measure,
        debug=debug,
        boot_options=BootOptions(
            cpus=Tunable.from_optional(cpus),
            memory_mb=Tunable.from_optional(memory),
            allow_overcommit=Tunable.from_optional(allow_overcommit),
            enable_deferred_commit=Tunable.from_optional(enable_deferred_commit),
        ),
    )


cli.add_command(lcow)
