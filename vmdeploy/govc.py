"""Management-system client backed by the ``govc`` CLI.

All queries use govc's ``-json`` output; the JSON shape handling lives in
:func:`parse_vm_info` and :func:`parse_about` so that any drift in govc's
output format is isolated here. Older govc releases emit Go-style
capitalised keys (``VirtualMachines``, ``PowerState``) while newer ones
emit lower camel case; lookups are case-insensitive to accept both.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any

from loguru import logger

from .config import DeployConfig
from .errors import SourceUnavailable
from .runtime import govc_cmd, govc_env
from .util import CmdResult, run_cmd

log = logger


@dataclass(frozen=True)
class VmInfo:
    name: str = ''
    uuid: str = ''
    addresses: tuple[str, ...] = ()
    power_state: str = ''
    host: str = ''


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if not isinstance(obj, dict):
        return default
    if key in obj:
        return obj[key]
    low = key.lower()
    for k, v in obj.items():
        if isinstance(k, str) and k.lower() == low:
            return v
    return default


def _moref_text(ref: Any) -> str:
    if isinstance(ref, dict):
        kind = _get(ref, 'type', '')
        value = _get(ref, 'value', '')
        if kind and value:
            return f'{kind}:{value}'
        return str(value or '')
    return str(ref or '')


def _loads(text: str) -> Any:
    try:
        return json.loads(text or 'null')
    except json.JSONDecodeError as ex:
        raise SourceUnavailable('govc', f'unparsable JSON output: {ex}') from ex


def parse_vm_info(text: str) -> list[VmInfo]:
    """Parse ``govc vm.info -json`` output into :class:`VmInfo` records."""
    data = _loads(text)
    vms = _get(data, 'virtualMachines') or []
    out: list[VmInfo] = []
    for vm in vms:
        config = _get(vm, 'config') or {}
        guest = _get(vm, 'guest') or {}
        runtime = _get(vm, 'runtime') or {}
        name = _get(vm, 'name') or _get(config, 'name') or ''
        addrs: list[str] = []
        primary = _get(guest, 'ipAddress')
        if isinstance(primary, str) and primary:
            addrs.append(primary)
        for nic in _get(guest, 'net') or []:
            for addr in _get(nic, 'ipAddress') or []:
                if isinstance(addr, str) and addr and addr not in addrs:
                    addrs.append(addr)
        host = _moref_text(_get(runtime, 'host'))
        if not host:
            summary_rt = _get(_get(vm, 'summary') or {}, 'runtime') or {}
            host = _moref_text(_get(summary_rt, 'host'))
        out.append(
            VmInfo(
                name=str(name),
                uuid=str(_get(config, 'uuid') or ''),
                addresses=tuple(addrs),
                power_state=str(_get(runtime, 'powerState') or ''),
                host=host,
            )
        )
    return out


def parse_about(text: str) -> dict[str, str]:
    data = _loads(text)
    about = _get(data, 'about') or data or {}
    return {
        'name': str(_get(about, 'fullName') or _get(about, 'name') or ''),
        'version': str(_get(about, 'version') or ''),
        'build': str(_get(about, 'build') or ''),
    }


def _is_uuid(text: str) -> bool:
    try:
        uuid.UUID(str(text))
    except ValueError:
        return False
    return True


def vm_selector(name_or_id: str) -> list[str]:
    """Return govc arguments selecting a VM by UUID or by name/path."""
    if _is_uuid(name_or_id):
        return ['-vm.uuid', name_or_id]
    return [name_or_id]


class GovcClient:
    """Synchronous govc caller; every call takes a caller-supplied timeout."""

    def __init__(self, cfg: DeployConfig):
        self.cfg = cfg
        self.env = govc_env(cfg)

    def _run(self, *args: str, timeout: float) -> CmdResult:
        return run_cmd(
            govc_cmd(*args),
            check=False,
            capture=True,
            env=self.env,
            timeout=timeout,
        )

    def _query(self, *args: str, timeout: float) -> str:
        res = self._run(*args, timeout=timeout)
        if res.timed_out:
            raise SourceUnavailable('govc', f'timed out after {timeout}s')
        if res.code != 0:
            detail = (res.stderr or res.stdout or '').strip() or f'exit {res.code}'
            raise SourceUnavailable('govc', detail)
        return res.stdout

    def info(self, name_or_id: str, *, timeout: float) -> VmInfo:
        text = self._query(
            'vm.info', '-json', *vm_selector(name_or_id), timeout=timeout
        )
        found = parse_vm_info(text)
        if not found:
            raise SourceUnavailable('govc', f'VM not found: {name_or_id}')
        return found[0]

    def exists(self, name: str, *, timeout: float) -> bool:
        """True if the VM/template exists; raises SourceUnavailable if unknown."""
        res = self._run('vm.info', '-json', name, timeout=timeout)
        if res.timed_out:
            raise SourceUnavailable('govc', f'timed out after {timeout}s')
        if res.code != 0:
            detail = (res.stderr or res.stdout or '').strip()
            if 'not found' in detail.lower():
                return False
            raise SourceUnavailable('govc', detail or f'exit {res.code}')
        return bool(parse_vm_info(res.stdout))

    def refresh_addresses(self, vm_id: str, *, timeout: float) -> None:
        # Ask vCenter to wait for fresh guest-reported addresses; result unused.
        res = self._run(
            'vm.ip',
            '-v4',
            '-a',
            f'-wait={max(1, int(timeout))}s',
            *vm_selector(vm_id),
            timeout=timeout + 2,
        )
        if res.code != 0:
            log.debug(
                'Address refresh for {} gave code={} ({})',
                vm_id,
                res.code,
                (res.stderr or '').strip(),
            )

    def host_name(self, host_ref: str, *, timeout: float) -> str:
        """Resolve a ``HostSystem:host-N`` reference to its inventory path."""
        if not host_ref:
            return ''
        text = self._query('ls', '-L', host_ref, timeout=timeout)
        lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
        return lines[0] if lines else host_ref

    def about(self, *, timeout: float) -> dict[str, str]:
        return parse_about(self._query('about', '-json', timeout=timeout))

    def list_templates(
        self, pattern: str = '*/templates/*', *, timeout: float
    ) -> list[str]:
        text = self._query('vm.info', '-r', '-json', pattern, timeout=timeout)
        return [vm.name for vm in parse_vm_info(text) if vm.name]
