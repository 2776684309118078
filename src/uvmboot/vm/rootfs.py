"""Per-VM root image preparation.

Each VM that boots from a VHD gets its own sparse copy of the shared base
image so concurrent boots never write to the same file.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil

logger = logging.getLogger(__name__)


async def _run(*args: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()


async def create_overlay(base_image_path: str, vm_id: str, overlay_dir: str) -> str:
    """Make a sparse copy of ``base_image_path`` inside ``overlay_dir``.

    Returns the path of the copy.
    """
    if not os.path.isfile(base_image_path):
        raise FileNotFoundError(f"Root image not found: {base_image_path}")

    overlay_path = os.path.join(overlay_dir, f"{vm_id}.vhd")
    code, _, stderr = await _run("cp", "--sparse=always", base_image_path, overlay_path)
    if code != 0:
        # macOS cp has no --sparse
        logger.warning("cp --sparse failed (%s), falling back to shutil.copy2 in thread", stderr)
        await asyncio.to_thread(shutil.copy2, base_image_path, overlay_path)
    return overlay_path


async def destroy_overlay(overlay_path: str) -> None:
    """Remove an overlay image and its parent directory if that is now empty."""
    overlay_dir = os.path.dirname(overlay_path)
    if os.path.exists(overlay_path):
        os.remove(overlay_path)
    if os.path.isdir(overlay_dir) and not os.listdir(overlay_dir):
        os.rmdir(overlay_dir)
