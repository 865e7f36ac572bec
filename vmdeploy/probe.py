"""Address hygiene, reachability probes, and the in-guest address query."""

from __future__ import annotations

import ipaddress
import math
import socket
import time
from typing import Iterable

import ubelt as ub
from loguru import logger

from .config import DeployConfig
from .errors import ProbeTimeout, SourceUnavailable
from .results import AddressProbe
from .runtime import ssh_base_args
from .util import run_cmd

log = logger


def normalize_address(raw: str) -> str | None:
    """Return a canonical address usable from the operator host, else None.

    Prefix lengths (``10.0.0.5/24``) are stripped. Loopback, link-local,
    unspecified and multicast addresses are dropped.
    """
    text = str(raw or '').strip()
    if not text:
        return None
    text = text.split('/', 1)[0].split('%', 1)[0]
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_multicast:
        return None
    return str(ip)


def merge_addresses(*sources: Iterable[str]) -> list[str]:
    """Deduplicated union of address sources, in first-seen order."""
    merged = ub.oset()
    for source in sources:
        for raw in source or ():
            addr = normalize_address(raw)
            if addr is not None:
                merged.add(addr)
    return list(merged)


def _ping_cmd(address: str, timeout: float) -> list[str]:
    wait = str(max(1, math.ceil(timeout)))
    try:
        is_v6 = ipaddress.ip_address(address).version == 6
    except ValueError:
        is_v6 = False
    if is_v6:
        return ['ping', '-6', '-c', '1', '-W', wait, address]
    return ['ping', '-c', '1', '-W', wait, address]


def icmp_probe(address: str, *, timeout: float) -> bool:
    res = run_cmd(
        _ping_cmd(address, timeout),
        check=False,
        capture=True,
        timeout=timeout,
    )
    if res.timed_out:
        raise ProbeTimeout(f'ping {address} timed out after {timeout}s')
    return res.code == 0


def tcp_probe(address: str, port: int, *, timeout: float) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except ConnectionRefusedError:
        # A refusal still proves the host's network stack is up.
        return True
    except socket.timeout as ex:
        raise ProbeTimeout(
            f'tcp {address}:{port} timed out after {timeout}s'
        ) from ex
    except OSError:
        return False


def probe_address(
    address: str,
    *,
    timeout: float = 3.0,
    tcp_port: int | None = 22,
) -> AddressProbe:
    """Single bounded probe: ICMP echo first, TCP connect as a fallback.

    Both attempts share one ``timeout`` budget. With a TCP fallback the
    echo gets half of it and the connect gets whatever is left.
    """
    details: list[str] = []
    start = time.monotonic()
    icmp_budget = timeout / 2 if tcp_port else timeout
    try:
        if icmp_probe(address, timeout=icmp_budget):
            return AddressProbe(address, True, 'icmp')
        details.append('icmp: no reply')
    except ProbeTimeout as ex:
        details.append(str(ex))
    remaining = timeout - (time.monotonic() - start)
    if tcp_port and remaining <= 0:
        details.append(f'tcp/{tcp_port}: no time left')
    elif tcp_port:
        try:
            if tcp_probe(address, tcp_port, timeout=remaining):
                return AddressProbe(address, True, f'tcp/{tcp_port}')
            details.append(f'tcp/{tcp_port}: unreachable')
        except ProbeTimeout as ex:
            details.append(str(ex))
    return AddressProbe(address, False, '', '; '.join(details))


def query_guest_addresses(
    cfg: DeployConfig, address: str, *, timeout: float
) -> list[str]:
    """Ask the guest for its own addresses over a short SSH session."""
    cmd = [
        'ssh',
        *ssh_base_args(
            cfg.ssh.identity_file,
            batch_mode=True,
            connect_timeout=cfg.ssh.connect_timeout_s,
            strict_host_key_checking='no',
            user_known_hosts_file='/dev/null',
        ),
        '-o',
        'LogLevel=ERROR',
        f'{cfg.ssh.user}@{address}',
        'hostname -I',
    ]
    res = run_cmd(cmd, check=False, capture=True, timeout=timeout)
    if res.timed_out:
        raise SourceUnavailable('guest', f'ssh to {address} timed out')
    if res.code != 0:
        detail = (res.stderr or '').strip() or f'exit {res.code}'
        raise SourceUnavailable('guest', f'ssh to {address}: {detail}')
    return res.stdout.split()
