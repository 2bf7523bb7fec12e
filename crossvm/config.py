"""Run configuration (TOML backed) and the per-VM Configuration value."""

from __future__ import annotations

import tomllib
import uuid as uuid_mod
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import ubelt as ub

from .util import expand

DEFAULT_USER = 'runner'
DEFAULT_MEMORY = '6G'
DEFAULT_CPU_COUNT = 2
RESOURCES_DISK_SIZE = '4m'
RESOURCES_DISK_LABEL = 'RES'


def default_temp_dir() -> str:
    return str(ub.Path.appdir('crossvm', type='cache'))


@dataclass
class VMConfig:
    operating_system: str = 'freebsd'
    architecture: str = 'x86_64'
    version: str = '13.2'
    memory: str = DEFAULT_MEMORY
    cpu_count: int = DEFAULT_CPU_COUNT
    hypervisor: str = ''
    user: str = DEFAULT_USER


@dataclass
class PathsConfig:
    image: str = ''
    hypervisor_dir: str = ''
    resources_dir: str = ''
    temp_dir: str = field(default_factory=default_temp_dir)
    ssh_identity_file: str = ''


@dataclass
class RunConfig:
    command: str = ''
    work_directory: str = ''
    shutdown_vm: bool = True


@dataclass
class ActionConfig:
    vm: VMConfig = field(default_factory=VMConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    run: RunConfig = field(default_factory=RunConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'ActionConfig':
        for key in (
            'image',
            'hypervisor_dir',
            'resources_dir',
            'temp_dir',
            'ssh_identity_file',
        ):
            value = getattr(self.paths, key)
            setattr(self.paths, key, expand(value) if value else '')
        return self


@dataclass(frozen=True)
class Configuration:
    """Parameters of one VM instance, fixed for the VM's lifetime."""

    disk_image: Path
    resources_disk_image: Path
    ssh_port: int
    memory: str = DEFAULT_MEMORY
    cpu_count: int = DEFAULT_CPU_COUNT
    user: str = DEFAULT_USER
    userboot: Optional[Path] = None
    firmware: Optional[Path] = None
    uuid: str = field(default_factory=lambda: str(uuid_mod.uuid4()))


_SECTIONS = ('vm', 'paths', 'run')


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: ActionConfig) -> str:
    """Render ``cfg`` as TOML; top level keys go before the first table."""
    d = asdict(cfg)
    lines: list[str] = []
    if cfg.verbosity != 1:
        lines += [f'verbosity = {cfg.verbosity}', '']
    for section in _SECTIONS:
        lines.append(f'[{section}]')
        for k, v in d[section].items():
            if isinstance(v, bool):
                lines.append(f'{k} = {"true" if v else "false"}')
            elif isinstance(v, int):
                lines.append(f'{k} = {v}')
            else:
                lines.append(f'{k} = "{_toml_escape(str(v))}"')
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def load(path: Path) -> ActionConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = ActionConfig()
    for section in _SECTIONS:
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def save(path: Path, cfg: ActionConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
