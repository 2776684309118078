"""Shared fixtures: an in-memory VM runtime that records every lifecycle call."""

from __future__ import annotations

import asyncio
import logging

import pytest

from uvmboot.config import BootConfiguration
from uvmboot.log import LOGGER_NAME
from uvmboot.vm.runtime import TerminationSignal, UnexpectedTerminationError


class FakeVM:
    def __init__(self, runtime: FakeRuntime, config: BootConfiguration) -> None:
        self.runtime = runtime
        self.config = config
        self.vm_id = config.vm_id
        self.started = False
        self.waited = False
        self.close_calls = 0

    async def __aenter__(self) -> FakeVM:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        self.runtime.events.append(("start", self.vm_id))
        if self.vm_id in self.runtime.fail_start:
            raise RuntimeError(f"start failed for {self.vm_id}")
        self.started = True

    async def wait_for_expected_termination(self, signal: TerminationSignal) -> None:
        self.runtime.events.append(("wait", self.vm_id))
        if self.runtime.gate is not None:
            await self.runtime.gate.wait()
        await asyncio.sleep(self.runtime.delays.get(self.vm_id, self.runtime.delay))
        observed = self.runtime.exits.get(self.vm_id, TerminationSignal.GUEST_EXIT)
        if observed is not signal:
            raise UnexpectedTerminationError(self.vm_id, expected=signal, observed=observed)
        self.waited = True

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_calls == 1:
            self.runtime.live -= 1
            self.runtime.events.append(("close", self.vm_id))


class FakeRuntime:
    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.delays: dict[str, float] = {}
        self.exits: dict[str, TerminationSignal] = {}
        self.fail_create: set[str] = set()
        self.fail_start: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.created: list[FakeVM] = []
        self.create_calls: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.live = 0
        self.max_live = 0

    async def create(self, config: BootConfiguration) -> FakeVM:
        self.create_calls.append(config.vm_id)
        if config.vm_id in self.fail_create:
            raise RuntimeError(f"create failed for {config.vm_id}")
        vm = FakeVM(self, config)
        self.created.append(vm)
        self.live += 1
        self.max_live = max(self.max_live, self.live)
        return vm


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture(autouse=True)
def _reset_uvmboot_logger():
    """The CLI reconfigures the package logger; put it back after each test."""
    yield
    log = logging.getLogger(LOGGER_NAME)
    for handler in list(log.handlers):
        log.removeHandler(handler)
    log.setLevel(logging.NOTSET)
    log.propagate = True
