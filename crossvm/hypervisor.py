"""Hypervisor backends: argv construction, launch, and guest addressing.

Two backends share the same surface:

* ``XhyveBackend`` runs guests with the macOS Hypervisor framework. It needs
  the guest's MAC address, probed before boot, to find the guest in the ARP
  table afterwards.
* ``QemuBackend`` emulates (or accelerates, where the host allows it) any
  supported guest and reaches it through a forwarded host port.
"""

from __future__ import annotations

import enum
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from . import guest
from .architecture import RESOURCE_BASE_URL, RESOURCE_VERSION, Architecture
from .config import Configuration
from .errors import ConfigurationError, CrossVMError, UnsupportedCombinationError
from .host import Host
from .network import wait_for_ip
from .util import run_cmd, spawn

log = logger

XHYVE_URL = f'{RESOURCE_BASE_URL}{RESOURCE_VERSION}/xhyve-macos.tar'
XHYVE_SSH_PORT = 22
QEMU_SSH_PORT = 2847

# Length of the "MAC: " prefix xhyve prints in front of the probed address.
_MAC_PREFIX_LEN = 5


class Kind(enum.Enum):
    XHYVE = 'xhyve'
    QEMU = 'qemu'


def to_kind(value: str) -> Optional[Kind]:
    """Map a user supplied backend name to a kind; empty means automatic."""
    value = str(value or '').strip().lower()
    if not value:
        return None
    try:
        return Kind(value)
    except ValueError:
        raise ConfigurationError(
            f'Unrecognized hypervisor: {value!r} (expected xhyve or qemu)'
        ) from None


SSH_PORTS = {
    Kind.XHYVE: XHYVE_SSH_PORT,
    Kind.QEMU: QEMU_SSH_PORT,
}

SHUTDOWN_COMMANDS = {
    guest.Kind.FREEBSD: 'sudo shutdown -p now',
    guest.Kind.NETBSD: 'sudo shutdown -p now',
    guest.Kind.OPENBSD: 'sudo shutdown -h -p now',
}


@dataclass(frozen=True)
class _XhyveGuest:
    network_device: str
    trailer: Callable[[Configuration], list[str]]


def _freebsd_trailer(config: Configuration) -> list[str]:
    return ['-f', f'fbsd,{config.userboot},{config.disk_image},']


def _openbsd_trailer(config: Configuration) -> list[str]:
    return ['-l', f'bootrom,{config.firmware}', '-w']


_XHYVE_GUESTS = {
    guest.Kind.FREEBSD: _XhyveGuest('virtio-net', _freebsd_trailer),
    guest.Kind.OPENBSD: _XhyveGuest('e1000', _openbsd_trailer),
}


class XhyveBackend:
    kind = Kind.XHYVE
    privileged = True
    ssh_port = XHYVE_SSH_PORT

    def __init__(self, hypervisor_path: Path | str, guest_kind: guest.Kind):
        if guest_kind not in _XHYVE_GUESTS:
            raise UnsupportedCombinationError(
                f'{guest_kind.value} guests are not supported by xhyve'
            )
        self.hypervisor_path = Path(hypervisor_path)
        self.guest_kind = guest_kind
        self._guest = _XHYVE_GUESTS[guest_kind]

    @property
    def shutdown_command(self) -> str:
        return SHUTDOWN_COMMANDS[self.guest_kind]

    def command(self, config: Configuration) -> list[str]:
        # The slot layout is what the prebuilt guest images expect.
        return [
            str(self.hypervisor_path),
            '-U', config.uuid,
            '-A',
            '-H',
            '-m', config.memory,
            '-c', str(config.cpu_count),
            '-s', '0:0,hostbridge',
            '-s', f'2:0,{self._guest.network_device}',
            '-s', f'4:0,virtio-blk,{config.disk_image}',
            '-s', f'4:1,virtio-blk,{config.resources_disk_image}',
            '-s', '31,lpc',
            '-l', 'com1,stdio',
            *self._guest.trailer(config),
        ]  # fmt: skip

    def discover_mac_address(self, config: Configuration) -> Optional[str]:
        log.debug('Getting MAC address')
        res = run_cmd([*self.command(config), '-M'], sudo=self.privileged)
        mac = res.stdout.strip()[_MAC_PREFIX_LEN:]
        log.info('Found MAC address: {}', mac)
        return mac

    def launch(self, config: Configuration) -> subprocess.Popen:
        return spawn(self.command(config), sudo=self.privileged)

    def resolve_address(self, mac_address: Optional[str]) -> str:
        if not mac_address:
            raise CrossVMError('xhyve guests can only be found by MAC address')
        return wait_for_ip(mac_address)


_QEMU_NETWORK_DEVICES = {
    guest.Kind.FREEBSD: 'virtio-net',
    guest.Kind.NETBSD: 'virtio-net',
    guest.Kind.OPENBSD: 'e1000',
}


def select_accelerator(host: Host, architecture: Architecture) -> str:
    """Pick kvm/hvf when the guest can run natively on this host, else tcg."""
    if host.architecture != architecture:
        return 'tcg'
    if host.is_macos:
        return 'hvf'
    if os.path.exists('/dev/kvm') and os.access('/dev/kvm', os.R_OK | os.W_OK):
        return 'kvm'
    return 'tcg'


class QemuBackend:
    kind = Kind.QEMU
    privileged = False
    ssh_port = QEMU_SSH_PORT
    address = 'localhost'

    def __init__(
        self,
        hypervisor_path: Path | str,
        guest_kind: guest.Kind,
        architecture: Architecture,
        *,
        accelerator: str = 'tcg',
    ):
        self.hypervisor_path = Path(hypervisor_path)
        self.guest_kind = guest_kind
        self.architecture = architecture
        self.accelerator = accelerator

    @property
    def shutdown_command(self) -> str:
        return SHUTDOWN_COMMANDS[self.guest_kind]

    @property
    def cpu(self) -> str:
        if self.accelerator == 'tcg':
            return self.architecture.default_cpu
        return 'host'

    def command(self, config: Configuration) -> list[str]:
        arch = self.architecture
        nic = _QEMU_NETWORK_DEVICES[self.guest_kind]
        cmd = [
            str(self.hypervisor_path),
            '-machine', f'type={arch.machine_type},accel={self.accelerator}',
            '-cpu', self.cpu,
            '-smp', str(config.cpu_count),
            '-m', config.memory,
            '-device', f'{nic},netdev=user.0',
            '-netdev', f'user,id=user.0,hostfwd=tcp::{config.ssh_port}-:22',
            '-display', 'none',
            '-monitor', 'none',
            '-serial', 'stdio',
            '-boot', 'strict=off',
            '-drive', f'if=none,file={config.disk_image},id=drive0,cache=unsafe,discard=ignore,format=raw',
            '-device', 'virtio-blk-pci,drive=drive0,bootindex=0',
            '-drive', f'if=none,file={config.resources_disk_image},id=drive1,cache=unsafe,discard=ignore,format=raw',
            '-device', 'virtio-blk-pci,drive=drive1,bootindex=1',
        ]  # fmt: skip
        if arch.needs_firmware and config.firmware is not None:
            cmd += ['-bios', str(config.firmware)]
        return cmd

    def discover_mac_address(self, config: Configuration) -> Optional[str]:
        return None

    def launch(self, config: Configuration) -> subprocess.Popen:
        return spawn(self.command(config))

    def resolve_address(self, mac_address: Optional[str]) -> str:
        return self.address


Backend = XhyveBackend | QemuBackend
