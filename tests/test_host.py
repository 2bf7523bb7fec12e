"""Tests for host detection."""

from __future__ import annotations

import pytest

from crossvm import host as host_mod
from crossvm.architecture import get_architecture
from crossvm.disk import LinuxDiskDriver, MacOsDiskDriver
from crossvm.errors import ConfigurationError
from crossvm.host import Host, Kind, check_commands, to_kind


def test_to_kind() -> None:
    assert to_kind('darwin') is Kind.MACOS
    assert to_kind('linux') is Kind.LINUX
    with pytest.raises(ConfigurationError):
        to_kind('win32')


def test_detect() -> None:
    got = Host.detect(platform_name='darwin', machine='x86_64')
    assert got.kind is Kind.MACOS
    assert got.architecture == get_architecture('x86_64')
    assert got.work_directory == '/Users/runner/work'
    assert isinstance(got.disk_driver, MacOsDiskDriver)


def test_linux_host_properties() -> None:
    got = Host(Kind.LINUX, get_architecture('arm64'))
    assert got.name == 'linux'
    assert got.work_directory == '/home/runner/work'
    assert isinstance(got.disk_driver, LinuxDiskDriver)
    assert not got.is_macos


def test_check_commands(monkeypatch) -> None:
    present = {'truncate', 'losetup', 'mount', 'umount', 'ssh'}
    monkeypatch.setattr(
        'crossvm.host.which',
        lambda cmd: f'/usr/bin/{cmd}' if cmd in present else None,
    )
    missing = check_commands(Host(Kind.LINUX, get_architecture('x86_64')))
    assert missing == ['mkfs.msdos', 'ssh-keygen']
    assert 'hdiutil' in host_mod.REQUIRED_CMDS[Kind.MACOS]
