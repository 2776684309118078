"""uvmboot: boot lightweight VMs in bulk with a fixed concurrency cap."""

from uvmboot.boot import BootOrchestrator, RunResult
from uvmboot.config import BootConfiguration, BootOptions, ConfigurationError, Tunable, build_boot_configuration
from uvmboot.vm.runtime import TerminationSignal, UnexpectedTerminationError

__all__ = [
    "BootConfiguration",
    "BootOptions",
    "BootOrchestrator",
    "ConfigurationError",
    "RunResult",
    "TerminationSignal",
    "Tunable",
    "UnexpectedTerminationError",
    "build_boot_configuration",
]
