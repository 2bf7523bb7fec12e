"""Command line entry points: run, plan, doctor and config init."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import scriptconfig as scfg
import ubelt as ub
from loguru import logger

from .action import BOOT_DISK_NAME, RESOURCES_DISK_NAME, resolve_operating_system, run_action
from .config import ActionConfig, dump_toml, load, save
from .errors import CrossVMError
from .host import Host, check_commands
from .util import shell_join

log = logger

_OVERRIDES = {
    'operating_system': ('vm', 'operating_system'),
    'architecture': ('vm', 'architecture'),
    'version': ('vm', 'version'),
    'memory': ('vm', 'memory'),
    'cpu_count': ('vm', 'cpu_count'),
    'hypervisor': ('vm', 'hypervisor'),
    'user': ('vm', 'user'),
    'image': ('paths', 'image'),
    'hypervisor_dir': ('paths', 'hypervisor_dir'),
    'resources_dir': ('paths', 'resources_dir'),
    'temp_dir': ('paths', 'temp_dir'),
    'ssh_identity_file': ('paths', 'ssh_identity_file'),
    'work_directory': ('run', 'work_directory'),
}


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(None, help='Path to config TOML (default: .crossvm.toml).')
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )


class _VMCommand(_BaseCommand):
    """Options that override the guest selection in the config file."""

    operating_system = scfg.Value(None, help='Guest OS: freebsd, netbsd or openbsd.')
    architecture = scfg.Value(None, help='Guest CPU architecture: x86_64 or arm64.')
    version = scfg.Value(None, help='Guest OS release, e.g. 13.2.')
    memory = scfg.Value(None, help='Guest memory, e.g. 6G.')
    cpu_count = scfg.Value(None, help='Number of guest CPUs.')
    hypervisor = scfg.Value(None, help='Force a backend: xhyve or qemu.')
    user = scfg.Value(None, help='Guest user that commands run as.')
    image = scfg.Value(None, help='Path to the downloaded qcow2 guest image.')
    hypervisor_dir = scfg.Value(None, help='Directory holding xhyve/qemu.')
    resources_dir = scfg.Value(None, help='Directory holding qemu-img and firmware.')
    temp_dir = scfg.Value(None, help='Scratch directory for disks and keys.')
    ssh_identity_file = scfg.Value(
        None, help='SSH private key (default: generate an ephemeral key).'
    )
    work_directory = scfg.Value(None, help='Guest work directory.')


def _cfg_path(p: str | None) -> Path:
    return Path(p or '.crossvm.toml').resolve()


def _load_cfg(args) -> ActionConfig:
    path = _cfg_path(args.config)
    if args.config is not None and not path.exists():
        raise FileNotFoundError(f'Config not found: {path}')
    cfg = load(path) if path.exists() else ActionConfig()
    for key, (section, attr) in _OVERRIDES.items():
        value = getattr(args, key, None)
        if value is not None:
            setattr(getattr(cfg, section), attr, value)
    return cfg.expanded_paths()


class RunCLI(_VMCommand):
    """Boot the guest, run a command in it and shut it down."""

    command = scfg.Value(None, position=1, help='Shell command to run in the guest.')
    no_shutdown = scfg.Value(
        False, isflag=True, help='Skip the guest power-off command.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args)
        if args.command is not None:
            cfg.run.command = args.command
        if args.no_shutdown:
            cfg.run.shutdown_vm = False
        summary = run_action(cfg)
        log.info('Run finished: {}', summary.as_dict())
        return summary.exit_code


class PlanCLI(_VMCommand):
    """Show the backend, download URLs and hypervisor argv without running."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args)
        host = Host.detect()
        operating_system = resolve_operating_system(cfg, host)
        hypervisor_dir = cfg.paths.hypervisor_dir or '<hypervisor_dir>'
        resources_dir = cfg.paths.resources_dir or '<resources_dir>'
        temp_dir = Path(cfg.paths.temp_dir)
        backend = operating_system.create_backend(hypervisor_dir)
        configuration = operating_system.build_configuration(
            Path(resources_dir) / BOOT_DISK_NAME,
            temp_dir / RESOURCES_DISK_NAME,
            resources_dir,
            memory=cfg.vm.memory,
            cpu_count=cfg.vm.cpu_count,
            user=cfg.vm.user,
        )
        print(f'Host:           {host.name} ({host.architecture})')
        print(
            f'Guest:          {operating_system.name} {operating_system.version} '
            f'({operating_system.architecture})'
        )
        print(f'Backend:        {operating_system.backend_kind.value}')
        print(f'SSH port:       {operating_system.ssh_port}')
        print(f'Image URL:      {operating_system.virtual_machine_image_url}')
        print(f'Hypervisor URL: {operating_system.hypervisor_url}')
        print(f'Resources URL:  {operating_system.resources_url}')
        print('')
        print(ub.highlight_code(shell_join(backend.command(configuration)), lexer_name='bash'))
        return 0


class DoctorCLI(_BaseCommand):
    """Check host prerequisites and list missing required tools."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        cls.cli(argv=argv, data=kwargs)
        host = Host.detect()
        missing = check_commands(host)
        if missing:
            print('Missing required commands:', ', '.join(missing))
            return 2
        print(f'Required host commands are present ({host.name}).')
        return 0


class ConfigInitCLI(_BaseCommand):
    """Write a default config file."""

    force = scfg.Value(False, isflag=True, help='Overwrite an existing file.')

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        save(path, ActionConfig())
        print(f'Wrote config: {path}')
        return 0


class ConfigShowCLI(_VMCommand):
    """Show the resolved config, including command line overrides."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(dump_toml(_load_cfg(args)), end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file commands."""

    init = ConfigInitCLI
    show = ConfigShowCLI


class CrossVMModalCLI(scfg.ModalCLI):
    """Run commands inside FreeBSD, NetBSD and OpenBSD guests on CI hosts."""

    run = RunCLI
    plan = PlanCLI
    doctor = DoctorCLI
    config = ConfigModalCLI


def _config_verbosity(argv: list[str]) -> int:
    """Verbosity from the config file named by ``--config`` (or the default)."""
    config_value = None
    if '--config' in argv:
        idx = argv.index('--config') + 1
        config_value = argv[idx] if idx < len(argv) else None
    cfg_path = _cfg_path(config_value)
    if not cfg_path.exists():
        return 1
    try:
        return load(cfg_path).verbosity
    except (OSError, ValueError) as ex:
        # Reported properly once the command itself loads the file.
        log.debug('Ignoring unreadable config {}: {}', cfg_path, ex)
        return 1


def main(argv: list[str] | None = None) -> None:
    argv = sys.argv[1:] if argv is None else list(argv)
    _setup_logging(_count_verbose(argv), _config_verbosity(argv))
    try:
        rc = CrossVMModalCLI.main(argv=argv, _noexit=True)
    except CrossVMError as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.debug('crossvm failed: {!r}', ex)
        sys.exit(2)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.exception('Unexpected crossvm failure')
        sys.exit(2)
    sys.exit(rc if isinstance(rc, int) else 0)


_LEVELS = {0: 'WARNING', 1: 'INFO'}


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    verbosity = args_verbose or cfg_verbosity
    level = _LEVELS.get(verbosity, 'DEBUG')
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>',
    )
    log.debug('Logging at {} (verbosity={})', level, verbosity)


def _count_verbose(argv: list[str]) -> int:
    """Count ``-v``/``-vv``/``--verbose`` occurrences anywhere in ``argv``."""
    count = argv.count('--verbose')
    for item in argv:
        if len(item) > 1 and item[0] == '-' and item[1] != '-':
            flags = item[1:]
            if flags == 'v' * len(flags):
                count += len(flags)
    return count
