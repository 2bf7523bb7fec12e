"""SSH argument construction and the remote-execute transport."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .results import CmdResult
from .util import run_cmd

log = logger


def ssh_base_args(
    ident: str = '',
    *,
    port: int | None = None,
    strict_host_key_checking: str = 'no',
    connect_timeout: int | None = None,
    batch_mode: bool = False,
    user_known_hosts_file: str | None = '/dev/null',
) -> list[str]:
    args: list[str] = []
    if batch_mode:
        args.extend(['-o', 'BatchMode=yes'])
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    if user_known_hosts_file:
        args.extend(['-o', f'UserKnownHostsFile={user_known_hosts_file}'])
    args.extend(['-o', 'LogLevel=ERROR'])
    if ident:
        args.extend(['-i', ident])
    if port is not None:
        args.extend(['-p', str(port)])
    return args


class SshTransport:
    """Runs command strings on the guest with the host's ssh client."""

    def __init__(self, identity_file: Path | str = '', *, connect_timeout: int = 5):
        self.identity_file = str(identity_file or '')
        self.connect_timeout = connect_timeout

    def command(self, user: str, host: str, port: int, command: str) -> list[str]:
        return [
            'ssh',
            *ssh_base_args(
                self.identity_file,
                port=port,
                batch_mode=True,
                connect_timeout=self.connect_timeout,
            ),
            f'{user}@{host}',
            command,
        ]

    def execute(
        self,
        user: str,
        host: str,
        port: int,
        command: str,
        *,
        capture: bool = True,
    ) -> CmdResult:
        return run_cmd(
            self.command(user, host, port, command), check=False, capture=capture
        )


def generate_ssh_key(directory: Path, *, name: str = 'id_ed25519') -> tuple[Path, Path]:
    """Create a passphrase-less key pair, replacing any previous one."""
    ident = Path(directory) / name
    pub = Path(str(ident) + '.pub')
    for p in (ident, pub):
        if p.exists():
            p.unlink()
    run_cmd(['ssh-keygen', '-t', 'ed25519', '-N', '', '-q', '-f', str(ident)])
    log.debug('Generated SSH key pair {}', ident)
    return ident, pub


def public_key_for(identity_file: Path | str) -> Optional[Path]:
    pub = Path(str(identity_file) + '.pub')
    return pub if pub.exists() else None
