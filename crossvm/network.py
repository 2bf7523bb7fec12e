"""Guest network address discovery through the host ARP table."""

from __future__ import annotations

import re
import time
from typing import Optional

from loguru import logger

from .errors import DiscoveryTimeoutError
from .util import run_cmd

log = logger

ARP_ATTEMPTS = 500
ARP_INTERVAL_S = 1.0

_PAREN_RE = re.compile(r'\((.+)\)')


def extract_ip_address(arp_output: str, mac_address: str) -> Optional[str]:
    """Return the parenthesized address on the first line naming the MAC."""
    for line in arp_output.split('\n'):
        if mac_address in line:
            match = _PAREN_RE.search(line)
            return match.group(1) if match else None
    return None


def dump_arp_table() -> str:
    return run_cmd(['arp', '-a', '-n']).stdout


def wait_for_ip(
    mac_address: str,
    *,
    attempts: int = ARP_ATTEMPTS,
    interval_s: float = ARP_INTERVAL_S,
) -> str:
    log.info('Getting IP address for MAC address: {}', mac_address)
    for attempt in range(attempts):
        if attempt:
            time.sleep(interval_s)
        log.debug('Waiting for IP to become available (attempt {})', attempt + 1)
        ip = extract_ip_address(dump_arp_table(), mac_address)
        if ip is not None:
            log.info('Found IP address: {}', ip)
            return ip
    raise DiscoveryTimeoutError(
        f'Failed to get IP address for MAC address: {mac_address} '
        f'(after {attempts} attempts)'
    )
