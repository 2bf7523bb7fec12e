"""Result dataclasses returned by tool invocations and full runs."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.code == 0


@dataclass
class RunSummary:
    operating_system: str
    backend: str
    ip_address: str = ''
    ssh_port: int = 0
    result: CmdResult | None = None

    @property
    def exit_code(self) -> int:
        return self.result.code if self.result is not None else 0

    def as_dict(self) -> dict[str, object]:
        return {
            'operating_system': self.operating_system,
            'backend': self.backend,
            'ip_address': self.ip_address,
            'ssh_port': self.ssh_port,
            'exit_code': self.exit_code,
        }
