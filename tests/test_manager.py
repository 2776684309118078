"""Tests for the Firecracker VM runtime (no real firecracker process)."""

import asyncio
import os
import tempfile
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest

from uvmboot.config import BootConfiguration, RootFSType, RuntimeConfig
from uvmboot.vm.manager import BASE_BOOT_ARGS, FirecrackerRuntime, FirecrackerVM
from uvmboot.vm.runtime import TerminationSignal, UnexpectedTerminationError


@pytest.fixture
def boot_files(tmp_path):
    boot_dir = tmp_path / "boot"
    boot_dir.mkdir()
    (boot_dir / "rootfs.vhd").write_bytes(b"\0" * 4096)
    return RuntimeConfig(boot_files_path=str(boot_dir), firecracker_bin="fc-test")


@pytest.fixture
def isolated_tmp(tmp_path, monkeypatch):
    """Send tempfile.mkdtemp into a directory the test can inspect."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


def _vm(runtime_config, **overrides):
    config = BootConfiguration(vm_id="uvmboot-0", **overrides)
    return FirecrackerVM(config, runtime_config)


def _fake_proc(returncode=0):
    proc = MagicMock()
    proc.stdout = None
    proc.stderr = None
    proc.returncode = None

    async def wait():
        proc.returncode = returncode
        return returncode

    proc.wait = AsyncMock(side_effect=wait)
    return proc


# ── Payloads ──────────────────────────────────────────────────


def test_boot_args_include_kernel_args_and_exec(boot_files):
    vm = _vm(boot_files, kernel_boot_options="quiet loglevel=0", exec_command_line="/bin/true")
    assert vm.boot_args == f"{BASE_BOOT_ARGS} quiet loglevel=0 -- /bin/true"


def test_boot_args_default(boot_files):
    assert _vm(boot_files).boot_args == BASE_BOOT_ARGS


def test_boot_source_kernel_direct_with_initrd(boot_files):
    body = _vm(boot_files).boot_source()
    assert body["kernel_image_path"] == boot_files.boot_file("vmlinux")
    assert body["initrd_path"] == boot_files.boot_file("initrd.img")


def test_boot_source_compressed_kernel_vhd(boot_files):
    body = _vm(boot_files, kernel_direct=False, root_fs_type=RootFSType.VHD).boot_source()
    assert body["kernel_image_path"] == boot_files.boot_file("kernel")
    assert "initrd_path" not in body


def test_root_devices(boot_files):
    assert _vm(boot_files).root_devices() == []

    pmem = _vm(boot_files, root_fs_type=RootFSType.VHD)
    [(path, body)] = pmem.root_devices()
    assert path == "/pmem/rootfs"
    assert body["root_device"] is True

    block = _vm(boot_files, root_fs_type=RootFSType.VHD, vpmem_device_count=0)
    [(path, body)] = block.root_devices()
    assert path == "/drives/rootfs"
    assert body["is_root_device"] is True


def test_machine_config(boot_files):
    body = _vm(boot_files, processor_count=3, memory_size_mb=768).machine_config()
    assert body == {"vcpu_count": 3, "mem_size_mib": 768}

    physical = _vm(boot_files, allow_overcommit=False).machine_config()
    assert physical["huge_pages"] == "2M"


def test_classify_exit(boot_files):
    vm = _vm(boot_files)
    assert vm.classify_exit(0) is TerminationSignal.GUEST_EXIT
    assert vm.classify_exit(1) is TerminationSignal.CRASH
    vm._stop_requested = True
    assert vm.classify_exit(0) is TerminationSignal.HOST_SHUTDOWN


# ── Lifecycle ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_initrd_and_close_is_idempotent(boot_files, isolated_tmp):
    vm = await FirecrackerRuntime(boot_files).create(BootConfiguration(vm_id="uvmboot-1"))
    assert os.path.isdir(vm._overlay_dir)
    assert vm._root_image_path == ""

    await vm.close()
    await vm.close()
    assert os.listdir(isolated_tmp) == []


@pytest.mark.asyncio
async def test_create_vhd_makes_private_copy(boot_files, isolated_tmp):
    config = BootConfiguration(vm_id="uvmboot-2", root_fs_type=RootFSType.VHD)
    async with await FirecrackerRuntime(boot_files).create(config) as vm:
        assert os.path.isfile(vm._root_image_path)
        assert vm._root_image_path != boot_files.boot_file("rootfs.vhd")
    assert os.listdir(isolated_tmp) == []


@pytest.mark.asyncio
async def test_create_failure_leaves_nothing_behind(tmp_path, isolated_tmp):
    runtime_config = RuntimeConfig(boot_files_path=str(tmp_path / "missing"))
    config = BootConfiguration(vm_id="uvmboot-3", root_fs_type=RootFSType.VHD)

    with pytest.raises(FileNotFoundError):
        await FirecrackerRuntime(runtime_config).create(config)
    assert os.listdir(isolated_tmp) == []


@pytest.mark.asyncio
async def test_start_configures_vm_in_order(boot_files, isolated_tmp):
    vm = await FirecrackerRuntime(boot_files).create(
        BootConfiguration(vm_id="uvmboot-4", enable_deferred_commit=True)
    )
    open(vm._socket_path, "w").close()
    proc = _fake_proc()

    with patch("uvmboot.vm.manager.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as spawn, \
            patch.object(vm, "_api_put", AsyncMock(return_value={})) as api_put:
        async with vm:
            await vm.start()
            await vm.wait_for_expected_termination(TerminationSignal.GUEST_EXIT)

    args = spawn.call_args.args
    assert args[:3] == ("fc-test", "--api-sock", vm._socket_path)
    assert spawn.call_args.kwargs["stdout"] == asyncio.subprocess.DEVNULL
    assert spawn.call_args.kwargs["stderr"] == asyncio.subprocess.PIPE

    paths = [c.args[0] for c in api_put.call_args_list]
    assert paths == ["/boot-source", "/machine-config", "/balloon", "/actions"]
    assert api_put.call_args_list[-1] == call("/actions", {"action_type": "InstanceStart"})
    proc.kill.assert_not_called()


@pytest.mark.asyncio
async def test_nonzero_exit_is_unexpected(boot_files, isolated_tmp):
    vm = await FirecrackerRuntime(boot_files).create(BootConfiguration(vm_id="uvmboot-5"))
    open(vm._socket_path, "w").close()

    with patch("uvmboot.vm.manager.asyncio.create_subprocess_exec", AsyncMock(return_value=_fake_proc(1))), \
            patch.object(vm, "_api_put", AsyncMock(return_value={})):
        async with vm:
            await vm.start()
            with pytest.raises(UnexpectedTerminationError) as exc_info:
                await vm.wait_for_expected_termination(TerminationSignal.GUEST_EXIT)

    assert exc_info.value.observed is TerminationSignal.CRASH
    assert exc_info.value.vm_id == "uvmboot-5"


@pytest.mark.asyncio
async def test_close_kills_running_vm(boot_files, isolated_tmp):
    vm = await FirecrackerRuntime(boot_files).create(BootConfiguration(vm_id="uvmboot-6"))
    open(vm._socket_path, "w").close()
    proc = _fake_proc()

    with patch("uvmboot.vm.manager.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)), \
            patch.object(vm, "_api_put", AsyncMock(return_value={})):
        await vm.start()
        await vm.close()

    proc.kill.assert_called_once()
    assert vm.classify_exit(0) is TerminationSignal.HOST_SHUTDOWN
    assert os.listdir(isolated_tmp) == []


@pytest.mark.asyncio
async def test_root_image_larger_than_vpmem_fails_start(boot_files, isolated_tmp):
    config = BootConfiguration(vm_id="uvmboot-7", root_fs_type=RootFSType.VHD, vpmem_size_bytes=1024)
    vm = await FirecrackerRuntime(boot_files).create(config)

    with patch("uvmboot.vm.manager.asyncio.create_subprocess_exec", AsyncMock()) as spawn:
        async with vm:
            with pytest.raises(RuntimeError, match="VPMem"):
                await vm.start()
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_wait_before_start_raises(boot_files):
    vm = _vm(boot_files)
    with pytest.raises(RuntimeError, match="not started"):
        await vm.wait_for_expected_termination(TerminationSignal.GUEST_EXIT)


@pytest.mark.asyncio
async def test_close_removes_files_when_kill_races_process_exit(boot_files, isolated_tmp):
    config = BootConfiguration(vm_id="uvmboot-8", root_fs_type=RootFSType.VHD)
    vm = await FirecrackerRuntime(boot_files).create(config)
    assert os.path.isfile(vm._root_image_path)

    proc = _fake_proc()
    proc.kill.side_effect = ProcessLookupError()
    vm._proc = proc

    await vm.close()

    proc.kill.assert_called_once()
    assert vm.classify_exit(0) is TerminationSignal.GUEST_EXIT
    assert os.listdir(isolated_tmp) == []


@pytest.mark.asyncio
async def test_close_removes_temp_dir_when_image_removal_fails(boot_files, isolated_tmp):
    config = BootConfiguration(vm_id="uvmboot-9", root_fs_type=RootFSType.VHD)
    vm = await FirecrackerRuntime(boot_files).create(config)

    with patch("uvmboot.vm.manager.destroy_overlay", AsyncMock(side_effect=OSError("busy"))):
        await vm.close()

    assert os.listdir(isolated_tmp) == []
