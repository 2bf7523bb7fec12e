from __future__ import annotations

import pytest

from crossvm.errors import ToolInvocationError
from crossvm.results import CmdResult
from crossvm.util import CmdError, kill_process, shell_join, spawn
from crossvm.util import run_cmd as _run_cmd


def test_shell_join_quotes() -> None:
    s = shell_join(['echo', 'a b', "c'd"])
    assert "'a b'" in s
    assert s.startswith('echo')


def test_run_cmd_success_and_failure() -> None:
    ok = _run_cmd(['bash', '-lc', 'printf ok'], check=True, capture=True)
    assert ok.code == 0
    assert ok.stdout == 'ok'
    bad = _run_cmd(['bash', '-lc', 'exit 7'], check=False, capture=True)
    assert bad.code == 7
    with pytest.raises(ToolInvocationError) as excinfo:
        _run_cmd(['bash', '-lc', 'echo nope >&2; exit 9'], check=True, capture=True)
    assert excinfo.value.result.code == 9
    assert 'nope' in str(excinfo.value)
    assert CmdError is ToolInvocationError


def test_run_cmd_sudo_prefix_when_non_root(monkeypatch) -> None:
    calls = []

    class P:
        returncode = 0
        stdout = ''
        stderr = ''

    monkeypatch.setattr('crossvm.util.os.geteuid', lambda: 1000)
    monkeypatch.setattr(
        'crossvm.util.subprocess.run',
        lambda cmd, **kwargs: (calls.append(cmd) or P()),
    )
    _run_cmd(['echo', 'x'], sudo=True, check=True, capture=True)
    assert calls[0][:3] == ['sudo', '-n', 'echo']


def test_run_cmd_no_sudo_prefix_as_root(monkeypatch) -> None:
    calls = []

    class P:
        returncode = 0
        stdout = ''
        stderr = ''

    monkeypatch.setattr('crossvm.util.os.geteuid', lambda: 0)
    monkeypatch.setattr(
        'crossvm.util.subprocess.run',
        lambda cmd, **kwargs: (calls.append(cmd) or P()),
    )
    _run_cmd(['losetup', '-d', '/dev/loop0'], sudo=True)
    assert calls[0] == ['losetup', '-d', '/dev/loop0']


def test_spawn_uses_popen(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr('crossvm.util.os.geteuid', lambda: 1000)
    monkeypatch.setattr(
        'crossvm.util.subprocess.Popen', lambda cmd: (calls.append(cmd) or 'proc')
    )
    assert spawn(['xhyve', '-A'], sudo=True) == 'proc'
    assert calls == [['sudo', '-n', 'xhyve', '-A']]


class _Proc:
    pid = 321

    def __init__(self):
        self.killed = False

    def kill(self):
        self.killed = True


def test_kill_process_under_sudo_kills_children_as_root(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr('crossvm.util.os.geteuid', lambda: 1000)
    monkeypatch.setattr(
        'crossvm.util.run_cmd',
        lambda cmd, **kwargs: (calls.append((cmd, kwargs)) or CmdResult(0, '', '')),
    )
    proc = _Proc()
    kill_process(proc, sudo=True)
    assert calls == [
        (['pkill', '-KILL', '-P', '321'], {'sudo': True, 'check': False})
    ]
    assert proc.killed


def test_kill_process_without_sudo_signals_directly(monkeypatch) -> None:
    calls = []
    monkeypatch.setattr(
        'crossvm.util.run_cmd', lambda cmd, **kwargs: calls.append(cmd)
    )
    proc = _Proc()
    kill_process(proc)
    assert calls == []
    assert proc.killed
