"""The VM runtime contract the boot orchestrator drives.

A runtime turns a BootConfiguration into a VM handle. The handle is owned by
exactly one boot sequence and must be closed on every exit path; using it as
an async context manager guarantees that.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from uvmboot.config import BootConfiguration


class TerminationSignal(str, enum.Enum):
    """How a VM came to stop."""

    # The guest powered off or rebooted on its own; the host never asked it to stop.
    GUEST_EXIT = "guest_exit"
    # The host requested the stop (close() or kill while running).
    HOST_SHUTDOWN = "host_shutdown"
    # The VM process died with a failure status.
    CRASH = "crash"


class UnexpectedTerminationError(RuntimeError):
    """The VM stopped, but not in the way the caller was waiting for."""

    def __init__(self, vm_id: str, expected: TerminationSignal, observed: TerminationSignal, detail: str = "") -> None:
        self.vm_id = vm_id
        self.expected = expected
        self.observed = observed
        message = f"VM {vm_id} terminated with {observed.value}, expected {expected.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class VMHandle(Protocol):
    vm_id: str

    async def start(self) -> None: ...

    async def wait_for_expected_termination(self, signal: TerminationSignal) -> None:
        """Block until the VM exits; raise unless the exit matches ``signal``."""
        ...

    async def close(self) -> None:
        """Release every resource. Idempotent and never raises."""
        ...

    async def __aenter__(self) -> VMHandle: ...

    async def __aexit__(self, exc_type, exc, tb) -> None: ...


class VMRuntime(Protocol):
    async def create(self, config: BootConfiguration) -> VMHandle: ...
