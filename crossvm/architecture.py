"""CPU architecture identifiers and the naming derived from them."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from .errors import ConfigurationError

RESOURCE_BASE_URL = (
    'https://github.com/cross-platform-actions/resources/releases/download/'
)
RESOURCE_VERSION = 'v0.3.0'


class Kind(enum.Enum):
    X86_64 = 'x86_64'
    ARM64 = 'arm64'


_ALIASES: dict[str, Kind] = {
    'x86_64': Kind.X86_64,
    'x86-64': Kind.X86_64,
    'amd64': Kind.X86_64,
    'arm64': Kind.ARM64,
    'aarch64': Kind.ARM64,
}


def to_kind(value: str) -> Kind:
    try:
        return _ALIASES[str(value).strip().lower()]
    except KeyError:
        raise ConfigurationError(
            f'Unrecognized architecture: {value!r} '
            f'(expected one of: {", ".join(sorted(_ALIASES))})'
        ) from None


@dataclass(frozen=True)
class _Naming:
    image_suffix: str
    qemu_name: str
    machine_type: str
    default_cpu: str
    needs_firmware: bool


_NAMING: dict[Kind, _Naming] = {
    Kind.X86_64: _Naming(
        image_suffix='x86_64',
        qemu_name='x86_64',
        machine_type='pc',
        default_cpu='qemu64',
        needs_firmware=False,
    ),
    Kind.ARM64: _Naming(
        image_suffix='arm64',
        qemu_name='aarch64',
        machine_type='virt',
        default_cpu='cortex-a57',
        needs_firmware=True,
    ),
}


@dataclass(frozen=True)
class Architecture:
    kind: Kind

    @property
    def _naming(self) -> _Naming:
        return _NAMING[self.kind]

    @property
    def image_suffix(self) -> str:
        return self._naming.image_suffix

    @property
    def qemu_name(self) -> str:
        return self._naming.qemu_name

    @property
    def machine_type(self) -> str:
        return self._naming.machine_type

    @property
    def default_cpu(self) -> str:
        return self._naming.default_cpu

    @property
    def needs_firmware(self) -> bool:
        return self._naming.needs_firmware

    @property
    def qemu_binary(self) -> str:
        return f'qemu-system-{self.qemu_name}'

    def resource_url(self, host_name: str) -> str:
        return (
            f'{RESOURCE_BASE_URL}{RESOURCE_VERSION}/'
            f'qemu-system-{self.qemu_name}-{host_name}.tar'
        )

    def __str__(self) -> str:
        return self.kind.value


def get_architecture(value: str | Kind) -> Architecture:
    kind = value if isinstance(value, Kind) else to_kind(value)
    return Architecture(kind)
