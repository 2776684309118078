"""Handlers for guest console output forwarded from a VM."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# Consumes one forwarded stream until EOF.
OutputHandler = Callable[[str, asyncio.StreamReader], Awaitable[None]]

# Longest run of bytes held back waiting for a newline.
MAX_LINE_BYTES = 64 * 1024


async def log_output(vm_id: str, reader: asyncio.StreamReader) -> None:
    """Default handler: each guest line becomes a debug log record.

    Lines longer than MAX_LINE_BYTES are logged in pieces; the stream is
    always read to EOF.
    """
    pending = b""
    while True:
        chunk = await reader.read(4096)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            _log_line(vm_id, line)
        if len(pending) >= MAX_LINE_BYTES:
            _log_line(vm_id, pending)
            pending = b""
    if pending:
        _log_line(vm_id, pending)


def _log_line(vm_id: str, line: bytes) -> None:
    logger.debug("%s", line.decode(errors="replace").rstrip(), extra={"uvm_id": vm_id})


async def stdout_output(vm_id: str, reader: asyncio.StreamReader) -> None:
    """Copy guest output to our stdout unchanged."""
    while True:
        chunk = await reader.read(4096)
        if not chunk:
            return
        sys.stdout.buffer.write(chunk)
        sys.stdout.flush()
