"""Guest operating system policy: backend selection, images and disk prep."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from loguru import logger

from . import architecture, guest, hypervisor
from .architecture import RESOURCE_BASE_URL, RESOURCE_VERSION, Architecture
from .config import DEFAULT_CPU_COUNT, DEFAULT_MEMORY, DEFAULT_USER, Configuration
from .errors import UnsupportedCombinationError
from .host import Host
from .util import run_cmd

log = logger

BASE_URL = 'https://github.com/cross-platform-actions'

RELEASE_VERSIONS = {
    guest.Kind.FREEBSD: 'v0.2.0',
    guest.Kind.NETBSD: 'v0.0.1-rc6',
    guest.Kind.OPENBSD: 'v0.2.0',
}

# Guests with prebuilt images that boot under xhyve, and the one
# architecture those images exist for.
NATIVE_GUESTS = frozenset({guest.Kind.FREEBSD, guest.Kind.OPENBSD})
NATIVE_ARCHITECTURE = architecture.Kind.X86_64

USERBOOT_NAME = 'userboot.so'
FIRMWARE_NAME = 'uefi.fd'


def native_supported(
    guest_kind: guest.Kind, arch: Architecture, host: Host
) -> bool:
    return (
        host.is_macos
        and guest_kind in NATIVE_GUESTS
        and arch.kind is NATIVE_ARCHITECTURE
        and host.architecture == arch
    )


def select_backend(
    guest_kind: guest.Kind,
    arch: Architecture,
    host: Host,
    requested: Optional[hypervisor.Kind] = None,
) -> hypervisor.Kind:
    """Pick the hypervisor for a (guest, architecture, host) triple.

    Without an explicit request the native backend is used wherever it can
    run and everything else falls back to QEMU. Requesting xhyve where it
    cannot run is an error.
    """
    native = native_supported(guest_kind, arch, host)
    if requested is hypervisor.Kind.XHYVE and not native:
        raise UnsupportedCombinationError(
            f'xhyve cannot run {guest_kind.value}/{arch} guests on a '
            f'{host.name}/{host.architecture} host'
        )
    if requested is not None:
        return requested
    return hypervisor.Kind.XHYVE if native else hypervisor.Kind.QEMU


@dataclass(frozen=True)
class OperatingSystem:
    kind: guest.Kind
    architecture: Architecture
    version: str
    host: Host
    backend_kind: hypervisor.Kind

    @classmethod
    def create(
        cls,
        kind: str | guest.Kind,
        arch: str | architecture.Kind,
        version: str,
        *,
        host: Host,
        hypervisor_name: str = '',
    ) -> 'OperatingSystem':
        guest_kind = kind if isinstance(kind, guest.Kind) else guest.to_kind(kind)
        arch_obj = architecture.get_architecture(arch)
        backend_kind = select_backend(
            guest_kind, arch_obj, host, hypervisor.to_kind(hypervisor_name)
        )
        log.debug(
            'Selected {} backend for {} {} ({})',
            backend_kind.value,
            guest_kind.value,
            version,
            arch_obj,
        )
        return cls(guest_kind, arch_obj, str(version), host, backend_kind)

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def release_version(self) -> str:
        return RELEASE_VERSIONS[self.kind]

    @property
    def ssh_port(self) -> int:
        return hypervisor.SSH_PORTS[self.backend_kind]

    @property
    def image_name(self) -> str:
        encoded_version = quote(self.version, safe='')
        return f'{self.name}-{encoded_version}-{self.architecture.image_suffix}.qcow2'

    @property
    def virtual_machine_image_url(self) -> str:
        return '/'.join(
            [
                BASE_URL,
                f'{self.name}-builder',
                'releases',
                'download',
                self.release_version,
                self.image_name,
            ]
        )

    @property
    def resources_url(self) -> str:
        return f'{RESOURCE_BASE_URL}{RESOURCE_VERSION}/resources-{self.host.name}.tar'

    @property
    def hypervisor_url(self) -> str:
        if self.backend_kind is hypervisor.Kind.XHYVE:
            return hypervisor.XHYVE_URL
        return self.architecture.resource_url(self.host.name)

    def prepare_disk(
        self,
        disk_image: Path | str,
        target_disk_name: str,
        resources_directory: Path | str,
    ) -> Path:
        """Convert the downloaded qcow2 image into a raw boot disk."""
        log.debug('Converting qcow2 image to raw')
        res_dir = Path(resources_directory)
        target = res_dir / target_disk_name
        run_cmd(
            [
                str(res_dir / 'qemu-img'),
                'convert',
                '-f',
                'qcow2',
                '-O',
                'raw',
                str(disk_image),
                str(target),
            ]
        )
        return target

    def hypervisor_path(self, hypervisor_directory: Path | str) -> Path:
        if self.backend_kind is hypervisor.Kind.XHYVE:
            return Path(hypervisor_directory) / 'xhyve'
        return Path(hypervisor_directory) / self.architecture.qemu_binary

    def create_backend(self, hypervisor_directory: Path | str) -> hypervisor.Backend:
        path = self.hypervisor_path(hypervisor_directory)
        if self.backend_kind is hypervisor.Kind.XHYVE:
            return hypervisor.XhyveBackend(path, self.kind)
        return hypervisor.QemuBackend(
            path,
            self.kind,
            self.architecture,
            accelerator=hypervisor.select_accelerator(self.host, self.architecture),
        )

    def build_configuration(
        self,
        disk_image: Path | str,
        resources_disk_image: Path | str,
        resources_directory: Path | str,
        *,
        memory: str = DEFAULT_MEMORY,
        cpu_count: int = DEFAULT_CPU_COUNT,
        user: str = DEFAULT_USER,
    ) -> Configuration:
        res_dir = Path(resources_directory)
        native = self.backend_kind is hypervisor.Kind.XHYVE
        userboot = None
        firmware = None
        if native and self.kind is guest.Kind.FREEBSD:
            userboot = res_dir / USERBOOT_NAME
        if (native and self.kind is guest.Kind.OPENBSD) or (
            not native and self.architecture.needs_firmware
        ):
            firmware = res_dir / FIRMWARE_NAME
        return Configuration(
            disk_image=Path(disk_image),
            resources_disk_image=Path(resources_disk_image),
            ssh_port=self.ssh_port,
            memory=memory,
            cpu_count=int(cpu_count),
            user=user,
            userboot=userboot,
            firmware=firmware,
        )
