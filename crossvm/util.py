"""Running host tools and the hypervisor process."""

from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from .errors import ToolInvocationError
from .results import CmdResult

log = logger

CmdError = ToolInvocationError


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(str(c)) for c in cmd)


def _as_root(cmd: Sequence[str], sudo: bool) -> list[str]:
    """Prefix ``cmd`` with ``sudo -n`` unless we already run as root.

    losetup, mount and xhyve need root. ``-n`` makes a CI runner without
    passwordless sudo fail at once instead of hanging on a prompt.
    """
    argv = [str(c) for c in cmd]
    if not sudo or os.geteuid() == 0:
        return argv
    return ['sudo', '-n', *argv]


def run_cmd(
    cmd: Sequence[str],
    *,
    sudo: bool = False,
    check: bool = True,
    capture: bool = True,
    input_text: Optional[str] = None,
) -> CmdResult:
    argv = _as_root(cmd, sudo)
    log.opt(depth=1).debug('RUN: {}', shell_join(argv))
    proc = subprocess.run(argv, input=input_text, capture_output=capture, text=True)
    res = CmdResult(proc.returncode, proc.stdout or '', proc.stderr or '')
    if not res.ok and check:
        log.opt(depth=1).error(
            '{} exited {}: {}', shell_join(argv), res.code, res.stderr.strip()
        )
        raise CmdError(argv, res)
    return res


def spawn(cmd: Sequence[str], *, sudo: bool = False) -> subprocess.Popen:
    """Start the hypervisor attached to our stdio so the guest console shows in the CI log."""
    argv = _as_root(cmd, sudo)
    log.opt(depth=1).debug('SPAWN: {}', shell_join(argv))
    return subprocess.Popen(argv)


def kill_process(proc: subprocess.Popen, *, sudo: bool = False) -> None:
    """SIGKILL a spawned process.

    sudo relays SIGTERM to its child but cannot relay SIGKILL, so for a
    process started through sudo the children are killed as root first.
    """
    if sudo and os.geteuid() != 0:
        run_cmd(['pkill', '-KILL', '-P', str(proc.pid)], sudo=True, check=False)
    proc.kill()


def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def ensure_dir(path: Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))
