"""Firecracker VM lifecycle management.

Implements the VM runtime contract on top of Firecracker microVMs.

Lifecycle of one FirecrackerVM:
    1. FirecrackerRuntime.create()          – lays out the VM's private files
    2. start()                              – spawns firecracker, configures it, boots
    3. wait_for_expected_termination()      – blocks until the firecracker process exits
    4. close()                              – tears down whatever is left

The host configures the VM through Firecracker's Unix-socket API. The guest
is never contacted over the network: a boot trial is over when the guest
shuts itself down and the firecracker process exits.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile

import httpx

from uvmboot.config import BootConfiguration, RootFSType, RuntimeConfig
from uvmboot.vm.rootfs import create_overlay, destroy_overlay
from uvmboot.vm.runtime import TerminationSignal, UnexpectedTerminationError

logger = logging.getLogger(__name__)

BASE_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


class FirecrackerVM:
    """A single Firecracker VM, exclusively owned by one boot sequence.

    Use as ``async with vm:`` so close() runs on every exit path.
    """

    def __init__(self, config: BootConfiguration, runtime_config: RuntimeConfig) -> None:
        self.vm_id = config.vm_id
        self.config = config
        self.runtime_config = runtime_config

        # The firecracker child process. None until start().
        self._proc: asyncio.subprocess.Process | None = None

        # Tasks draining forwarded stdout/stderr into the output handler.
        self._output_tasks: list[asyncio.Task] = []

        # Temporary directory holding the API socket and the root image copy.
        self._overlay_dir: str = ""
        self._socket_path: str = ""

        # Private copy of the VHD root image; empty for initrd boots.
        self._root_image_path: str = ""

        # Set once the host kills the VM, so its exit is not read as a guest exit.
        self._stop_requested = False
        self._closed = False

    async def __aenter__(self) -> FirecrackerVM:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def boot_args(self) -> str:
        args = BASE_BOOT_ARGS
        if self.config.kernel_boot_options:
            args = f"{args} {self.config.kernel_boot_options}"
        if self.config.exec_command_line:
            # Everything after "--" is handed to init as its command line.
            args = f"{args} -- {self.config.exec_command_line}"
        return args

    @property
    def uses_pmem_root(self) -> bool:
        return self.config.root_fs_type is RootFSType.VHD and self.config.vpmem_device_count > 0

    async def prepare(self) -> None:
        """Create the VM's private directory and root image. Spawns nothing."""
        self._overlay_dir = tempfile.mkdtemp(prefix=f"{self.vm_id}-")
        self._socket_path = os.path.join(self._overlay_dir, "firecracker.sock")

        if self.config.root_fs_type is RootFSType.VHD:
            self._root_image_path = await create_overlay(
                base_image_path=self.runtime_config.boot_file(self.runtime_config.rootfs_vhd_file),
                vm_id=self.vm_id,
                overlay_dir=self._overlay_dir,
            )

    async def start(self) -> None:
        """Spawn firecracker, configure it over its API socket, and boot the guest."""
        if self._proc is not None:
            raise RuntimeError(f"VM {self.vm_id} already started")
        if self._closed:
            raise RuntimeError(f"VM {self.vm_id} is closed")

        if self.uses_pmem_root:
            image_size = os.path.getsize(self._root_image_path)
            if image_size > self.config.vpmem_size_bytes:
                raise RuntimeError(
                    f"Root image is {image_size} bytes, larger than the "
                    f"VPMem device size of {self.config.vpmem_size_bytes} bytes"
                )

        self._proc = await asyncio.create_subprocess_exec(
            self.runtime_config.firecracker_bin,
            "--api-sock",
            self._socket_path,
            "--id",
            self.vm_id,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if self.config.forward_stdout else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE if self.config.forward_stderr else asyncio.subprocess.DEVNULL,
        )
        for stream in (self._proc.stdout, self._proc.stderr):
            if stream is not None:
                self._output_tasks.append(
                    asyncio.create_task(self.config.output_handler(self.vm_id, stream))
                )

        # Poll up to 5 seconds (50 * 100ms) for the API socket to appear.
        for _ in range(50):
            if os.path.exists(self._socket_path):
                break
            if self._proc.returncode is not None:
                raise RuntimeError(f"firecracker exited with status {self._proc.returncode} during startup")
            await asyncio.sleep(0.1)
        else:
            raise RuntimeError("Firecracker socket did not appear")

        await self._api_put("/boot-source", self.boot_source())
        for path, body in self.root_devices():
            await self._api_put(path, body)
        await self._api_put("/machine-config", self.machine_config())
        if self.config.enable_deferred_commit:
            # Pages are only backed once the guest touches them and handed
            # back to the host as the guest frees them.
            await self._api_put(
                "/balloon",
                {"amount_mib": 0, "deflate_on_oom": True, "free_page_reporting": True},
            )

        await self._api_put("/actions", {"action_type": "InstanceStart"})
        logger.debug("VM %s started", self.vm_id)

    def boot_source(self) -> dict:
        rc = self.runtime_config
        kernel = rc.uncompressed_kernel_file if self.config.kernel_direct else rc.kernel_file
        body = {
            "kernel_image_path": rc.boot_file(kernel),
            "boot_args": self.boot_args,
        }
        if self.config.root_fs_type is RootFSType.INITRD:
            body["initrd_path"] = rc.boot_file(rc.initrd_file)
        return body

    def root_devices(self) -> list[tuple[str, dict]]:
        """API calls attaching the root image; none for an initrd boot."""
        if self.config.root_fs_type is not RootFSType.VHD:
            return []
        if self.uses_pmem_root:
            return [
                (
                    "/pmem/rootfs",
                    {
                        "id": "rootfs",
                        "path_on_host": self._root_image_path,
                        "root_device": True,
                        "read_only": False,
                    },
                )
            ]
        return [
            (
                "/drives/rootfs",
                {
                    "drive_id": "rootfs",
                    "path_on_host": self._root_image_path,
                    "is_root_device": True,
                    "is_read_only": False,
                },
            )
        ]

    def machine_config(self) -> dict:
        body: dict = {
            "vcpu_count": self.config.processor_count,
            "mem_size_mib": self.config.memory_size_mb,
        }
        if not self.config.allow_overcommit:
            # Hugetlbfs-backed memory cannot be overcommitted.
            body["huge_pages"] = "2M"
        return body

    async def wait_for_expected_termination(self, signal: TerminationSignal) -> None:
        """Wait for the firecracker process to exit and check how it stopped.

        Returns only if the observed termination is exactly ``signal``; any
        other exit, clean or not, raises UnexpectedTerminationError.
        """
        if self._proc is None:
            raise RuntimeError(f"VM {self.vm_id} not started")

        returncode = await self._proc.wait()
        await self._drain_output()

        observed = self.classify_exit(returncode)
        if observed is not signal:
            raise UnexpectedTerminationError(
                self.vm_id, expected=signal, observed=observed, detail=f"exit status {returncode}"
            )

    def classify_exit(self, returncode: int) -> TerminationSignal:
        if self._stop_requested:
            return TerminationSignal.HOST_SHUTDOWN
        if returncode == 0:
            return TerminationSignal.GUEST_EXIT
        return TerminationSignal.CRASH

    async def close(self) -> None:
        """Tear down all resources associated with this VM.

        Safe to call multiple times. Failures are logged, never raised.
        """
        if self._closed:
            return
        self._closed = True

        # Each step runs even if an earlier one failed.
        try:
            if self._proc and self._proc.returncode is None:
                self._proc.kill()
                self._stop_requested = True
                await self._proc.wait()
        except ProcessLookupError:
            # Exited between the returncode check and kill().
            pass
        except Exception:
            logger.exception("Failed to stop VM %s", self.vm_id)
        finally:
            for task in self._output_tasks:
                task.cancel()
            await asyncio.gather(*self._output_tasks, return_exceptions=True)
            self._output_tasks.clear()

        try:
            if self._root_image_path:
                await destroy_overlay(self._root_image_path)
        except Exception:
            logger.exception("Failed to remove root image for VM %s", self.vm_id)
        finally:
            # Also removes the API socket, which lives in the same directory.
            if self._overlay_dir and os.path.isdir(self._overlay_dir):
                shutil.rmtree(self._overlay_dir, ignore_errors=True)

        logger.debug("VM %s released", self.vm_id)

    async def _drain_output(self) -> None:
        """Let the output handlers finish reading what the guest wrote."""
        if self._output_tasks:
            results = await asyncio.gather(*self._output_tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning("Output handler for VM %s failed: %s", self.vm_id, result)
            self._output_tasks.clear()

    async def _api_put(self, path: str, body: dict) -> dict:
        """Send a PUT request to the Firecracker REST API over the Unix domain socket.

        Raises RuntimeError if the API returns an HTTP 4xx/5xx error.
        """
        transport = httpx.AsyncHTTPTransport(uds=self._socket_path)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as client:
            r = await client.put(path, json=body)
            if r.status_code >= 400:
                raise RuntimeError(f"Firecracker API error on {path}: {r.status_code} {r.text}")
            # /actions and most config endpoints answer 204 with no body
            return r.json() if r.text else {}


class FirecrackerRuntime:
    """Creates FirecrackerVM handles from boot configurations."""

    def __init__(self, runtime_config: RuntimeConfig | None = None) -> None:
        self.runtime_config = runtime_config or RuntimeConfig.from_env()

    async def create(self, config: BootConfiguration) -> FirecrackerVM:
        vm = FirecrackerVM(config, self.runtime_config)
        try:
            await vm.prepare()
        except Exception:
            # The caller never sees this handle, so release it here.
            await vm.close()
            raise
        return vm
