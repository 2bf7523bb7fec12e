"""End-to-end run: prepare disks, boot the guest, run a command, clean up."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from loguru import logger

from .config import RESOURCES_DISK_LABEL, RESOURCES_DISK_SIZE, ActionConfig
from .disk import disk_scope
from .errors import ConfigurationError
from .host import Host
from .operating_system import OperatingSystem
from .remote import SshTransport, generate_ssh_key, public_key_for
from .results import RunSummary
from .util import ensure_dir
from .vm import Vm

log = logger

BOOT_DISK_NAME = 'disk.raw'
RESOURCES_DISK_NAME = 'res.raw'


def resolve_operating_system(
    cfg: ActionConfig, host: Optional[Host] = None
) -> OperatingSystem:
    host = host or Host.detect()
    return OperatingSystem.create(
        cfg.vm.operating_system,
        cfg.vm.architecture,
        cfg.vm.version,
        host=host,
        hypervisor_name=cfg.vm.hypervisor,
    )


def _require_path(value: str, what: str) -> Path:
    if not value:
        raise ConfigurationError(f'paths.{what} is not set')
    path = Path(value)
    if not path.exists():
        raise ConfigurationError(f'paths.{what} does not exist: {path}')
    return path


def _identity(cfg: ActionConfig, temp_dir: Path) -> tuple[Path, Path]:
    if cfg.paths.ssh_identity_file:
        ident = Path(cfg.paths.ssh_identity_file)
        pub = public_key_for(ident)
        if pub is None:
            raise ConfigurationError(f'No public key next to {ident}')
        return ident, pub
    return generate_ssh_key(temp_dir)


def run_action(
    cfg: ActionConfig,
    *,
    host: Optional[Host] = None,
    transport: Optional[SshTransport] = None,
) -> RunSummary:
    """Boot the configured guest, run ``cfg.run.command`` in it and tear down.

    Teardown order is guest power-off, hypervisor exit, then unmount and
    detach of the resources disk. A non-zero exit code from the command is
    reported in the summary, not raised.
    """
    cfg = cfg.expanded_paths()
    host = host or Host.detect()
    operating_system = resolve_operating_system(cfg, host)
    image = _require_path(cfg.paths.image, 'image')
    hypervisor_dir = _require_path(cfg.paths.hypervisor_dir, 'hypervisor_dir')
    resources_dir = _require_path(cfg.paths.resources_dir, 'resources_dir')
    temp_dir = Path(cfg.paths.temp_dir)
    ensure_dir(temp_dir)

    summary = RunSummary(
        operating_system=operating_system.name,
        backend=operating_system.backend_kind.value,
        ssh_port=operating_system.ssh_port,
    )
    ident, pub = _identity(cfg, temp_dir)
    transport = transport or SshTransport(ident)
    backend = operating_system.create_backend(hypervisor_dir)
    boot_disk = operating_system.prepare_disk(image, BOOT_DISK_NAME, resources_dir)
    work_directory = cfg.run.work_directory or host.work_directory

    with disk_scope(
        host.disk_driver,
        RESOURCES_DISK_SIZE,
        temp_dir / RESOURCES_DISK_NAME,
        temp_dir / 'mount' / RESOURCES_DISK_LABEL,
    ) as mount_path:
        shutil.copyfile(pub, Path(mount_path) / 'keys')
        # The hypervisor reads the backing file, not the mounted filesystem.
        os.sync()
        configuration = operating_system.build_configuration(
            boot_disk,
            temp_dir / RESOURCES_DISK_NAME,
            resources_dir,
            memory=cfg.vm.memory,
            cpu_count=cfg.vm.cpu_count,
            user=cfg.vm.user,
        )
        with Vm(configuration, backend, transport=transport) as vm:
            vm.boot()
            summary.ip_address = vm.ip_address or ''
            vm.setup_work_directory(work_directory)
            if cfg.run.command:
                log.info('Running command in guest: {}', cfg.run.command)
                summary.result = vm.execute(cfg.run.command, capture=False)
                log.info('Command exited with code {}', summary.result.code)
            vm.shutdown(power_off=bool(cfg.run.shutdown_vm))
    return summary
