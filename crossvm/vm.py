"""VM lifecycle controller: boot, address discovery, execute, and shutdown."""

from __future__ import annotations

import enum
import shlex
import subprocess
import time
from typing import Optional

from loguru import logger

from .config import Configuration
from .errors import (
    CrossVMError,
    InvalidStateError,
    ReadinessTimeoutError,
    ToolInvocationError,
)
from .hypervisor import Backend
from .remote import SshTransport
from .results import CmdResult
from .util import kill_process

log = logger

READY_ATTEMPTS = 300
READY_INTERVAL_S = 1.0
SHUTDOWN_TIMEOUT_S = 60.0
KILL_TIMEOUT_S = 10.0


class State(enum.Enum):
    CREATED = 'created'
    BOOTING = 'booting'
    AWAITING_NETWORK = 'awaiting_network'
    READY = 'ready'
    EXECUTING = 'executing'
    SHUTTING_DOWN = 'shutting_down'
    TERMINATED = 'terminated'
    FAILED = 'failed'


_TERMINAL = frozenset({State.TERMINATED, State.FAILED})

_TRANSITIONS = {
    State.CREATED: {State.BOOTING, State.SHUTTING_DOWN},
    State.BOOTING: {State.AWAITING_NETWORK, State.SHUTTING_DOWN},
    State.AWAITING_NETWORK: {State.READY, State.SHUTTING_DOWN},
    State.READY: {State.EXECUTING, State.SHUTTING_DOWN},
    State.EXECUTING: {State.READY, State.SHUTTING_DOWN},
    State.SHUTTING_DOWN: {State.TERMINATED},
}


def guest_work_directory(user: str) -> str:
    return f'/home/{user}/work'


def work_directory_commands(work_directory: str, user: str) -> list[str]:
    """Guest commands that make ``work_directory`` reachable from ~/work."""
    destination = guest_work_directory(user)
    commands = [
        f'rm -rf {shlex.quote(destination)} && mkdir -p {shlex.quote(work_directory)}'
    ]
    if work_directory != destination:
        commands.append(
            f'ln -sf {shlex.quote(work_directory + "/")} {shlex.quote(destination)}'
        )
    return commands


class Vm:
    def __init__(
        self,
        configuration: Configuration,
        backend: Backend,
        *,
        transport: Optional[SshTransport] = None,
        shutdown_timeout_s: float = SHUTDOWN_TIMEOUT_S,
        kill_timeout_s: float = KILL_TIMEOUT_S,
    ):
        self.configuration = configuration
        self.backend = backend
        self.transport = transport or SshTransport()
        self.shutdown_timeout_s = shutdown_timeout_s
        self.kill_timeout_s = kill_timeout_s
        self.state = State.CREATED
        self.mac_address: Optional[str] = None
        self.ip_address: Optional[str] = None
        self.process: Optional[subprocess.Popen] = None

    @property
    def user(self) -> str:
        return self.configuration.user

    @property
    def ssh_port(self) -> int:
        return self.configuration.ssh_port

    def _transition(self, new: State) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new not in allowed:
            raise InvalidStateError(
                f'Cannot move VM from {self.state.value} to {new.value}'
            )
        log.debug('VM state {} -> {}', self.state.value, new.value)
        self.state = new

    def _fail(self) -> None:
        if self.state not in _TERMINAL:
            log.debug('VM state {} -> failed', self.state.value)
            self.state = State.FAILED

    def init(self) -> None:
        """Probe the MAC address where the backend needs one, then launch."""
        self._transition(State.BOOTING)
        try:
            self.mac_address = self.backend.discover_mac_address(self.configuration)
            self.process = self.backend.launch(self.configuration)
        except BaseException:
            self._fail()
            raise
        log.info('Started {} (uuid={})', self.backend.kind.value, self.configuration.uuid)

    def resolve_address(self) -> str:
        self._transition(State.AWAITING_NETWORK)
        try:
            self.ip_address = self.backend.resolve_address(self.mac_address)
        except BaseException:
            self._fail()
            raise
        return self.ip_address

    def _check_process(self) -> None:
        if self.process is None:
            return
        code = self.process.poll()
        if code is not None:
            self._fail()
            raise CrossVMError(
                f'Hypervisor exited with code {code} before the guest was ready'
            )

    def wait_until_ready(
        self,
        *,
        attempts: int = READY_ATTEMPTS,
        interval_s: float = READY_INTERVAL_S,
    ) -> None:
        if self.state is not State.AWAITING_NETWORK or self.ip_address is None:
            raise InvalidStateError(
                f'Guest address is not resolved (state={self.state.value})'
            )
        log.info('Waiting for SSH on {}:{}', self.ip_address, self.ssh_port)
        for attempt in range(attempts):
            if attempt:
                time.sleep(interval_s)
            self._check_process()
            res = self.transport.execute(
                self.user, self.ip_address, self.ssh_port, 'true'
            )
            if res.ok:
                self._transition(State.READY)
                log.info('VM is ready on {}:{}', self.ip_address, self.ssh_port)
                return
        self._fail()
        raise ReadinessTimeoutError(
            f'Timed out waiting for SSH on {self.ip_address}:{self.ssh_port}'
        )

    def boot(self) -> None:
        self.init()
        self.resolve_address()
        self.wait_until_ready()

    def execute(self, command: str, *, capture: bool = True) -> CmdResult:
        if self.state not in (State.READY, State.EXECUTING):
            raise InvalidStateError(
                f'Cannot execute commands while {self.state.value}'
            )
        if self.ip_address is None:
            raise InvalidStateError('Guest address is not resolved')
        previous = self.state
        self.state = State.EXECUTING
        try:
            return self.transport.execute(
                self.user, self.ip_address, self.ssh_port, command, capture=capture
            )
        finally:
            if self.state is State.EXECUTING:
                self.state = previous

    def setup_work_directory(self, work_directory: str) -> None:
        log.debug('Setting up work directory {}', work_directory)
        for command in work_directory_commands(work_directory, self.user):
            res = self.execute(command)
            if not res.ok:
                raise ToolInvocationError(command, res)

    def shutdown(self, *, power_off: bool = True) -> None:
        """Power the guest off (when reachable) and make sure xhyve/qemu exits.

        The hypervisor is stopped even when sending the power-off command is
        interrupted. Calling this again while already shutting down skips
        straight to stopping the process.
        """
        grace_s: float = 0
        try:
            if self.state in (State.READY, State.EXECUTING):
                self._transition(State.SHUTTING_DOWN)
                if power_off:
                    log.info('Shutting down VM')
                    res = self.transport.execute(
                        self.user,
                        self.ip_address,
                        self.ssh_port,
                        self.backend.shutdown_command,
                    )
                    # The connection usually drops while the guest powers off.
                    log.debug('Shutdown command exited with code {}', res.code)
                    grace_s = self.shutdown_timeout_s
            elif self.state not in _TERMINAL and self.state is not State.SHUTTING_DOWN:
                self._transition(State.SHUTTING_DOWN)
        finally:
            self._stop_process(grace_s)
        if self.state is State.SHUTTING_DOWN:
            self._transition(State.TERMINATED)

    def _stop_process(self, grace_s: float) -> None:
        proc = self.process
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.wait(timeout=grace_s)
            return
        except subprocess.TimeoutExpired:
            pass
        log.warning('Hypervisor still running; terminating pid={}', proc.pid)
        proc.terminate()
        try:
            proc.wait(timeout=self.kill_timeout_s)
        except subprocess.TimeoutExpired:
            log.warning('Hypervisor ignored SIGTERM; killing pid={}', proc.pid)
            kill_process(proc, sudo=self.backend.privileged)
            proc.wait()

    def __enter__(self) -> 'Vm':
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            self.shutdown()
        except Exception as ex:
            if exc is None:
                raise
            log.error('VM cleanup failed after an earlier error: {}', ex)
        return False
