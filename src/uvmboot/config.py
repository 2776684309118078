"""Boot configuration: tunables, validation, and the per-run VM template.

Flags that may be left unset are carried as ``Tunable`` pairs so an explicit
``False``/``0`` can be told apart from "not given". ``build_boot_configuration``
validates every tunable and merges the present ones onto the defaults,
producing an immutable ``BootConfiguration`` shared by every job of a run.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field, replace
from typing import Generic, TypeVar

from uvmboot.vm.output import OutputHandler, log_output, stdout_output

T = TypeVar("T")

BYTES_PER_MB = 1024 * 1024


class ConfigurationError(ValueError):
    """An option value that cannot be turned into a valid configuration."""

    def __init__(self, option: str, value: object, reason: str = "") -> None:
        self.option = option
        self.value = value
        message = f"Unrecognized value '{value}' for option {option}"
        if reason:
            message = f"Invalid value '{value}' for option {option}: {reason}"
        super().__init__(message)


@dataclass(frozen=True)
class Tunable(Generic[T]):
    """A flag value together with whether it was given at all."""

    value: T | None = None
    present: bool = False

    @classmethod
    def of(cls, value: T) -> Tunable[T]:
        return cls(value=value, present=True)

    @classmethod
    def unset(cls) -> Tunable[T]:
        return cls()

    @classmethod
    def from_optional(cls, value: T | None) -> Tunable[T]:
        """Click hands unset options over as None."""
        return cls.unset() if value is None else cls.of(value)

    def resolve(self, default: T) -> T:
        return self.value if self.present else default  # type: ignore[return-value]


class RootFSType(str, enum.Enum):
    INITRD = "initrd"
    VHD = "vhd"


class OutputHandling(str, enum.Enum):
    STDOUT = "stdout"


_OUTPUT_HANDLERS: dict[OutputHandling, OutputHandler] = {
    OutputHandling.STDOUT: stdout_output,
}


@dataclass
class RuntimeConfig:
    """Host-side paths used by the Firecracker runtime."""

    boot_files_path: str = "/opt/uvmboot"
    firecracker_bin: str = "firecracker"
    kernel_file: str = "kernel"
    uncompressed_kernel_file: str = "vmlinux"
    initrd_file: str = "initrd.img"
    rootfs_vhd_file: str = "rootfs.vhd"

    @staticmethod
    def from_env() -> RuntimeConfig:
        return RuntimeConfig(
            boot_files_path=os.environ.get("UVMBOOT_BOOT_FILES_PATH", "/opt/uvmboot"),
            firecracker_bin=os.environ.get("UVMBOOT_FIRECRACKER_BIN", "firecracker"),
        )

    def boot_file(self, name: str) -> str:
        return os.path.join(self.boot_files_path, name)


@dataclass
class BootOptions:
    """Raw tunables as parsed from the command line."""

    cpus: Tunable[int] = field(default_factory=Tunable.unset)
    memory_mb: Tunable[int] = field(default_factory=Tunable.unset)
    allow_overcommit: Tunable[bool] = field(default_factory=Tunable.unset)
    enable_deferred_commit: Tunable[bool] = field(default_factory=Tunable.unset)
    kernel_args: Tunable[str] = field(default_factory=Tunable.unset)
    root_fs_type: Tunable[str] = field(default_factory=Tunable.unset)
    vpmem_max_count: Tunable[int] = field(default_factory=Tunable.unset)
    vpmem_max_size_mb: Tunable[int] = field(default_factory=Tunable.unset)
    kernel_direct: Tunable[bool] = field(default_factory=Tunable.unset)
    exec_command_line: Tunable[str] = field(default_factory=Tunable.unset)
    forward_stdout: Tunable[bool] = field(default_factory=Tunable.unset)
    forward_stderr: Tunable[bool] = field(default_factory=Tunable.unset)
    output_handling: Tunable[str] = field(default_factory=Tunable.unset)


@dataclass(frozen=True)
class BootConfiguration:
    """Resolved VM resource knobs. Only ``vm_id`` varies between jobs."""

    vm_id: str = ""
    processor_count: int = 2
    memory_size_mb: int = 1024
    allow_overcommit: bool = True
    enable_deferred_commit: bool = False
    kernel_boot_options: str = ""
    root_fs_type: RootFSType = RootFSType.INITRD
    vpmem_device_count: int = 64
    vpmem_size_bytes: int = 4 * 1024 * BYTES_PER_MB
    kernel_direct: bool = True
    exec_command_line: str = ""
    forward_stdout: bool = False
    forward_stderr: bool = True
    output_handler: OutputHandler = field(default=log_output, compare=False)

    def for_vm(self, vm_id: str) -> BootConfiguration:
        return replace(self, vm_id=vm_id)


def _parse_enum(option: str, tunable: Tunable[str], enum_cls: type[enum.Enum]):
    if not tunable.present:
        return None
    raw = str(tunable.value).lower()
    try:
        return enum_cls(raw)
    except ValueError:
        raise ConfigurationError(option, tunable.value) from None


def _check_positive(option: str, tunable: Tunable[int]) -> None:
    if tunable.present and tunable.value is not None and tunable.value < 1:
        raise ConfigurationError(option, tunable.value, "must be at least 1")


def _check_non_negative(option: str, tunable: Tunable[int]) -> None:
    if tunable.present and tunable.value is not None and tunable.value < 0:
        raise ConfigurationError(option, tunable.value, "must not be negative")


def build_boot_configuration(options: BootOptions) -> BootConfiguration:
    """Validate ``options`` and merge the present ones onto the defaults.

    Raises ConfigurationError before anything is booted, so a bad value
    never reaches the worker pool.
    """
    root_fs_type = _parse_enum("root-fs-type", options.root_fs_type, RootFSType)
    output_handling = _parse_enum("output-handling", options.output_handling, OutputHandling)
    _check_positive("cpus", options.cpus)
    _check_positive("memory", options.memory_mb)
    _check_non_negative("vpmem-max-count", options.vpmem_max_count)
    _check_non_negative("vpmem-max-size", options.vpmem_max_size_mb)

    defaults = BootConfiguration()
    overrides: dict[str, object] = {
        "processor_count": options.cpus.resolve(defaults.processor_count),
        "memory_size_mb": options.memory_mb.resolve(defaults.memory_size_mb),
        "allow_overcommit": options.allow_overcommit.resolve(defaults.allow_overcommit),
        "enable_deferred_commit": options.enable_deferred_commit.resolve(
            defaults.enable_deferred_commit
        ),
        "kernel_boot_options": options.kernel_args.resolve(defaults.kernel_boot_options),
        "vpmem_device_count": options.vpmem_max_count.resolve(defaults.vpmem_device_count),
        "kernel_direct": options.kernel_direct.resolve(defaults.kernel_direct),
        "exec_command_line": options.exec_command_line.resolve(defaults.exec_command_line),
        "forward_stdout": options.forward_stdout.resolve(defaults.forward_stdout),
        "forward_stderr": options.forward_stderr.resolve(defaults.forward_stderr),
    }
    if root_fs_type is not None:
        overrides["root_fs_type"] = root_fs_type
    if options.vpmem_max_size_mb.present:
        overrides["vpmem_size_bytes"] = options.vpmem_max_size_mb.value * BYTES_PER_MB
    if output_handling is not None:
        overrides["output_handler"] = _OUTPUT_HANDLERS[output_handling]

    config = replace(defaults, **overrides)

    if config.enable_deferred_commit and not config.allow_overcommit:
        raise ConfigurationError(
            "enable-deferred-commit",
            True,
            "not supported on physically backed VMs (allow-overcommit is off)",
        )
    return config


def validate_run(count: int, parallel: int) -> None:
    """Reject run sizes the worker pool cannot honour."""
    if parallel < 1:
        raise ConfigurationError("parallel", parallel, "must be at least 1")
    if count < 0:
        raise ConfigurationError("count", count, "must not be negative")
