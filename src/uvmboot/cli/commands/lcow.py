"""uvmboot lcow: boot Linux utility VMs."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING

import click

from uvmboot.boot import BootOrchestrator
from uvmboot.config import ConfigurationError, Tunable, build_boot_configuration, validate_run
from uvmboot.log import setup_logging
from uvmboot.vm.manager import FirecrackerRuntime

if TYPE_CHECKING:
    from uvmboot.cli.main import GlobalOptions


@click.command()
@click.option("--kernel-args", default=None, help="Additional arguments to pass to the kernel")
@click.option("--root-fs-type", default=None, help="Either 'initrd' or 'vhd'. Uses the runtime default if not specified")
@click.option(
    "--vpmem-max-count",
    type=int,
    default=None,
    help="Number of VPMem devices on the UVM. Uses the runtime default if not specified",
)
@click.option(
    "--vpmem-max-size",
    type=int,
    default=None,
    help="Size of each VPMem device, in MB. Uses the runtime default if not specified",
)
@click.option("--kernel-direct/--no-kernel-direct", default=None, help="Use kernel direct booting for UVM")
@click.option("--exec", "exec_command_line", default=None, help="Command to execute in the UVM.")
@click.option("--fwd-stdout/--no-fwd-stdout", default=None, help="Whether stdout from the process in the UVM should be forwarded")
@click.option("--fwd-stderr/--no-fwd-stderr", default=None, help="Whether stderr from the process in the UVM should be forwarded")
@click.option(
    "--output-handling",
    default=None,
    help="Controls how output from UVM is handled. Use 'stdout' to print all output to stdout",
)
@click.pass_obj
def lcow(
    opts: GlobalOptions,
    kernel_args: str | None,
    root_fs_type: str | None,
    vpmem_max_count: int | None,
    vpmem_max_size: int | None,
    kernel_direct: bool | None,
    exec_command_line: str | None,
    fwd_stdout: bool | None,
    fwd_stderr: bool | None,
    output_handling: str | None,
) -> None:
    """Boot an LCOW UVM."""
    log = setup_logging(opts.debug)

    boot_options = replace(
        opts.boot_options,
        kernel_args=Tunable.from_optional(kernel_args),
        root_fs_type=Tunable.from_optional(root_fs_type),
        vpmem_max_count=Tunable.from_optional(vpmem_max_count),
        vpmem_max_size_mb=Tunable.from_optional(vpmem_max_size),
        kernel_direct=Tunable.from_optional(kernel_direct),
        exec_command_line=Tunable.from_optional(exec_command_line),
        forward_stdout=Tunable.from_optional(fwd_stdout),
        forward_stderr=Tunable.from_optional(fwd_stderr),
        output_handling=Tunable.from_optional(output_handling),
    )

    # Everything is validated here; the pool never starts on a bad value.
    try:
        validate_run(opts.count, opts.parallel)
        template = build_boot_configuration(boot_options)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    orchestrator = BootOrchestrator(
        runtime=FirecrackerRuntime(),
        template=template,
        parallel=opts.parallel,
        measure=opts.measure,
        log=log,
    )
    result = asyncio.run(orchestrator.run(opts.count))

    if result.elapsed is not None:
        click.echo(f"Elapsed time: {result.elapsed:.3f}s")
