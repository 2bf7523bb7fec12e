"""Tests for hypervisor argv construction and backend behaviour."""

from __future__ import annotations

from pathlib import Path

import pytest

from crossvm import guest
from crossvm.architecture import get_architecture
from crossvm.config import Configuration
from crossvm.errors import ConfigurationError, UnsupportedCombinationError
from crossvm.host import Host, Kind as HostKind
from crossvm.hypervisor import (
    Kind,
    QemuBackend,
    XhyveBackend,
    select_accelerator,
    to_kind,
)
from crossvm.results import CmdResult


def _config(**kwargs) -> Configuration:
    base = dict(
        disk_image=Path('/tmp/disk.raw'),
        resources_disk_image=Path('/tmp/res.raw'),
        ssh_port=22,
        memory='4G',
        cpu_count=3,
        uuid='0B1C8F6E-0000-4000-8000-000000000001',
        userboot=Path('/res/userboot.so'),
        firmware=Path('/res/uefi.fd'),
    )
    base.update(kwargs)
    return Configuration(**base)


XHYVE_PREFIX = [
    '/hv/xhyve',
    '-U', '0B1C8F6E-0000-4000-8000-000000000001',
    '-A',
    '-H',
    '-m', '4G',
    '-c', '3',
    '-s', '0:0,hostbridge',
]  # fmt: skip


def test_xhyve_freebsd_command() -> None:
    backend = XhyveBackend('/hv/xhyve', guest.Kind.FREEBSD)
    assert backend.command(_config()) == [
        *XHYVE_PREFIX,
        '-s', '2:0,virtio-net',
        '-s', '4:0,virtio-blk,/tmp/disk.raw',
        '-s', '4:1,virtio-blk,/tmp/res.raw',
        '-s', '31,lpc',
        '-l', 'com1,stdio',
        '-f', 'fbsd,/res/userboot.so,/tmp/disk.raw,',
    ]  # fmt: skip
    assert backend.shutdown_command == 'sudo shutdown -p now'
    assert backend.ssh_port == 22


def test_xhyve_openbsd_command() -> None:
    backend = XhyveBackend('/hv/xhyve', guest.Kind.OPENBSD)
    cmd = backend.command(_config())
    assert cmd[:len(XHYVE_PREFIX)] == XHYVE_PREFIX
    assert cmd[len(XHYVE_PREFIX):len(XHYVE_PREFIX) + 2] == ['-s', '2:0,e1000']
    assert cmd[-3:] == ['-l', 'bootrom,/res/uefi.fd', '-w']
    assert backend.shutdown_command == 'sudo shutdown -h -p now'


def test_xhyve_rejects_netbsd() -> None:
    with pytest.raises(UnsupportedCombinationError):
        XhyveBackend('/hv/xhyve', guest.Kind.NETBSD)


def test_xhyve_mac_probe(monkeypatch) -> None:
    calls = []

    def fake_run_cmd(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return CmdResult(0, 'MAC: 2:a4:6b:1c:9d:e\n', '')

    monkeypatch.setattr('crossvm.hypervisor.run_cmd', fake_run_cmd)
    backend = XhyveBackend('/hv/xhyve', guest.Kind.FREEBSD)
    config = _config()
    assert backend.discover_mac_address(config) == '2:a4:6b:1c:9d:e'
    cmd, kwargs = calls[0]
    assert cmd == [*backend.command(config), '-M']
    assert kwargs['sudo'] is True


def test_xhyve_resolve_address_uses_arp(monkeypatch) -> None:
    seen = []
    monkeypatch.setattr(
        'crossvm.hypervisor.wait_for_ip', lambda mac: (seen.append(mac) or '10.0.0.5')
    )
    backend = XhyveBackend('/hv/xhyve', guest.Kind.FREEBSD)
    assert backend.resolve_address('2:a4') == '10.0.0.5'
    assert seen == ['2:a4']


def test_qemu_command_x86_64() -> None:
    backend = QemuBackend(
        '/hv/qemu-system-x86_64',
        guest.Kind.NETBSD,
        get_architecture('x86_64'),
        accelerator='tcg',
    )
    cmd = backend.command(_config(ssh_port=2847))
    assert cmd[0] == '/hv/qemu-system-x86_64'
    assert cmd[cmd.index('-machine') + 1] == 'type=pc,accel=tcg'
    assert cmd[cmd.index('-cpu') + 1] == 'qemu64'
    assert cmd[cmd.index('-smp') + 1] == '3'
    assert cmd[cmd.index('-m') + 1] == '4G'
    assert 'user,id=user.0,hostfwd=tcp::2847-:22' in cmd
    drives = [cmd[i + 1] for i, c in enumerate(cmd) if c == '-drive']
    assert 'file=/tmp/disk.raw' in drives[0]
    assert 'file=/tmp/res.raw' in drives[1]
    assert '-bios' not in cmd
    assert backend.resolve_address(None) == 'localhost'
    assert backend.discover_mac_address(_config()) is None
    assert backend.ssh_port == 2847


def test_qemu_command_arm64_with_acceleration() -> None:
    backend = QemuBackend(
        '/hv/qemu-system-aarch64',
        guest.Kind.FREEBSD,
        get_architecture('arm64'),
        accelerator='hvf',
    )
    cmd = backend.command(_config(ssh_port=2847))
    assert cmd[cmd.index('-machine') + 1] == 'type=virt,accel=hvf'
    assert cmd[cmd.index('-cpu') + 1] == 'host'
    assert cmd[-2:] == ['-bios', '/res/uefi.fd']


def test_select_accelerator(monkeypatch) -> None:
    x86 = get_architecture('x86_64')
    arm = get_architecture('arm64')
    mac_arm = Host(HostKind.MACOS, arm)
    assert select_accelerator(mac_arm, arm) == 'hvf'
    assert select_accelerator(mac_arm, x86) == 'tcg'
    linux = Host(HostKind.LINUX, x86)
    monkeypatch.setattr('crossvm.hypervisor.os.path.exists', lambda p: True)
    monkeypatch.setattr('crossvm.hypervisor.os.access', lambda p, m: True)
    assert select_accelerator(linux, x86) == 'kvm'
    monkeypatch.setattr('crossvm.hypervisor.os.access', lambda p, m: False)
    assert select_accelerator(linux, x86) == 'tcg'


def test_to_kind() -> None:
    assert to_kind('') is None
    assert to_kind('XHYVE') is Kind.XHYVE
    assert to_kind('qemu') is Kind.QEMU
    with pytest.raises(ConfigurationError):
        to_kind('bhyve')


def test_only_xhyve_launches_through_sudo(monkeypatch) -> None:
    spawned = []
    monkeypatch.setattr(
        'crossvm.hypervisor.spawn',
        lambda cmd, sudo=False: (spawned.append((cmd[0], sudo)) or 'proc'),
    )
    xhyve = XhyveBackend('/hv/xhyve', guest.Kind.FREEBSD)
    qemu = QemuBackend(
        '/hv/qemu-system-x86_64', guest.Kind.FREEBSD, get_architecture('x86_64')
    )
    assert xhyve.launch(_config()) == 'proc'
    assert qemu.launch(_config(ssh_port=2847)) == 'proc'
    assert spawned == [('/hv/xhyve', True), ('/hv/qemu-system-x86_64', False)]
    assert xhyve.privileged and not qemu.privileged
