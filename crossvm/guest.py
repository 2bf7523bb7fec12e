"""Guest operating system identifiers."""

from __future__ import annotations

import enum

from .errors import ConfigurationError


class Kind(enum.Enum):
    FREEBSD = 'freebsd'
    NETBSD = 'netbsd'
    OPENBSD = 'openbsd'


def to_kind(value: str) -> Kind:
    try:
        return Kind(str(value).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f'Unrecognized operating system: {value!r} '
            f'(expected one of: {", ".join(k.value for k in Kind)})'
        ) from None
