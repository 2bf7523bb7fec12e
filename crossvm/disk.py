"""Host disk drivers and the scoped disk acquisition used around a VM run.

Each host kind provides the same five primitives: create a disk file, attach
it as a block device, put a FAT filesystem on it, mount it and detach it. The
:func:`disk_scope` context manager chains them and releases whatever was
acquired, in reverse order, on every exit path.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from loguru import logger

from .util import CmdError, ensure_dir, run_cmd

log = logger

T = TypeVar('T')


class MacOsDiskDriver:
    """Disk primitives built on mkfile, hdiutil and diskutil."""

    name = 'macos'

    def create_disk_file(self, size: str, disk_path: Path) -> None:
        run_cmd(['mkfile', '-n', size, str(disk_path)])

    def create_disk_device(self, disk_path: Path) -> str:
        res = run_cmd(
            [
                'hdiutil',
                'attach',
                '-imagekey',
                'diskimage-class=CRawDiskImage',
                '-nomount',
                str(disk_path),
            ]
        )
        return res.stdout.strip()

    def partition_disk(self, device_path: str, label: str) -> None:
        run_cmd(
            [
                'diskutil',
                'partitionDisk',
                device_path,
                '1',
                'GPT',
                'fat32',
                label,
                '100%',
            ]
        )

    def mount_disk(self, device_path: str, mount_path: Path) -> Path:
        # diskutil mounts the new volume itself, named after its label.
        return Path('/Volumes') / Path(mount_path).name

    def unmount_disk(self, mount_path: Path) -> None:
        run_cmd(['diskutil', 'unmount', str(mount_path)])

    def detach_device(self, device_path: str) -> None:
        run_cmd(['hdiutil', 'detach', device_path])


class LinuxDiskDriver:
    """Disk primitives built on truncate, losetup, mkfs.msdos and mount."""

    name = 'linux'

    def create_disk_file(self, size: str, disk_path: Path) -> None:
        run_cmd(['truncate', '-s', size, str(disk_path)])

    def create_disk_device(self, disk_path: Path) -> str:
        res = run_cmd(['losetup', '-f', '--show', str(disk_path)], sudo=True)
        return res.stdout.strip()

    def partition_disk(self, device_path: str, label: str) -> None:
        # No partition table, the whole device carries the filesystem.
        run_cmd(['mkfs.msdos', device_path], sudo=True)

    def mount_disk(self, device_path: str, mount_path: Path) -> Path:
        mount_path = Path(mount_path)
        ensure_dir(mount_path)
        run_cmd(
            ['mount', '-o', f'uid={os.getuid()}', device_path, str(mount_path)],
            sudo=True,
        )
        return mount_path

    def unmount_disk(self, mount_path: Path) -> None:
        run_cmd(['umount', str(mount_path)], sudo=True)

    def detach_device(self, device_path: str) -> None:
        run_cmd(['losetup', '-d', device_path], sudo=True)


DiskDriver = MacOsDiskDriver | LinuxDiskDriver


@dataclass
class DiskHandle:
    """The file -> device -> mount chain, holding only acquired stages."""

    file_path: Path
    file_created: bool = False
    device_path: Optional[str] = None
    mount_path: Optional[Path] = None

    def release(self, driver: DiskDriver, *, strict: bool = True) -> None:
        """Unmount then detach, each at most once.

        Failures are logged. With ``strict`` the first failure is re-raised
        after every stage has been attempted.
        """
        errors: list[CmdError] = []
        if self.mount_path is not None:
            mount_path, self.mount_path = self.mount_path, None
            log.debug('Unmounting {}', mount_path)
            try:
                driver.unmount_disk(mount_path)
            except CmdError as ex:
                log.error('Failed to unmount {}: {}', mount_path, ex)
                errors.append(ex)
        if self.device_path is not None:
            device_path, self.device_path = self.device_path, None
            log.debug('Detaching {}', device_path)
            try:
                driver.detach_device(device_path)
            except CmdError as ex:
                log.error('Failed to detach {}: {}', device_path, ex)
                errors.append(ex)
        if errors and strict:
            raise errors[0]


@contextmanager
def disk_scope(
    driver: DiskDriver,
    size: str,
    file_path: Path | str,
    mount_path: Path | str,
) -> Iterator[Path]:
    """Create, attach, format and mount a disk for the duration of the block.

    The partition label is the last component of ``mount_path``. The block
    only runs once every stage succeeded; on exit the mount is released and
    the device detached, skipping stages that were never acquired. Release
    errors never replace an error raised by the block itself.
    """
    handle = DiskHandle(file_path=Path(file_path))
    mount_path = Path(mount_path)
    try:
        log.debug('Creating disk file {} ({})', handle.file_path, size)
        driver.create_disk_file(size, handle.file_path)
        handle.file_created = True
        handle.device_path = driver.create_disk_device(handle.file_path)
        log.debug('Attached {} as {}', handle.file_path, handle.device_path)
        driver.partition_disk(handle.device_path, mount_path.name)
        handle.mount_path = driver.mount_disk(handle.device_path, mount_path)
        log.debug('Mounted {} at {}', handle.device_path, handle.mount_path)
        yield handle.mount_path
    except BaseException:
        handle.release(driver, strict=False)
        raise
    else:
        handle.release(driver, strict=True)


def create_disk(
    driver: DiskDriver,
    size: str,
    file_path: Path | str,
    mount_path: Path | str,
    body: Callable[[Path], T],
) -> T:
    """Run ``body`` with the mount path of a freshly provisioned disk."""
    with disk_scope(driver, size, file_path, mount_path) as resolved:
        return body(resolved)
