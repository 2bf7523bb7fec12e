"""Host platform detection and host tool checks."""

from __future__ import annotations

import enum
import platform
import sys
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .architecture import Architecture, get_architecture
from .disk import DiskDriver, LinuxDiskDriver, MacOsDiskDriver
from .errors import ConfigurationError
from .util import which

log = logger


class Kind(enum.Enum):
    MACOS = 'macos'
    LINUX = 'linux'


_PLATFORMS = {
    'darwin': Kind.MACOS,
    'linux': Kind.LINUX,
}

_WORK_DIRECTORIES = {
    Kind.MACOS: '/Users/runner/work',
    Kind.LINUX: '/home/runner/work',
}

_DISK_DRIVERS: dict[Kind, type[DiskDriver]] = {
    Kind.MACOS: MacOsDiskDriver,
    Kind.LINUX: LinuxDiskDriver,
}

REQUIRED_CMDS = {
    Kind.MACOS: [
        'mkfile',
        'hdiutil',
        'diskutil',
        'arp',
        'pkill',
        'ssh',
        'ssh-keygen',
    ],
    Kind.LINUX: [
        'truncate',
        'losetup',
        'mkfs.msdos',
        'mount',
        'umount',
        'ssh',
        'ssh-keygen',
    ],
}


def to_kind(value: str) -> Kind:
    for prefix, kind in _PLATFORMS.items():
        if value.startswith(prefix):
            return kind
    raise ConfigurationError(f'Unhandled host platform: {value}')


@dataclass(frozen=True)
class Host:
    kind: Kind
    architecture: Architecture

    @classmethod
    def detect(
        cls,
        *,
        platform_name: Optional[str] = None,
        machine: Optional[str] = None,
    ) -> 'Host':
        host = cls(
            kind=to_kind(platform_name or sys.platform),
            architecture=get_architecture(machine or platform.machine()),
        )
        log.debug('Detected host: {} ({})', host.name, host.architecture)
        return host

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def work_directory(self) -> str:
        return _WORK_DIRECTORIES[self.kind]

    @property
    def disk_driver(self) -> DiskDriver:
        return _DISK_DRIVERS[self.kind]()

    @property
    def is_macos(self) -> bool:
        return self.kind is Kind.MACOS


def check_commands(host: Host) -> list[str]:
    return [c for c in REQUIRED_CMDS[host.kind] if which(c) is None]
