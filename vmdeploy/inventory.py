"""VM inventory snapshot produced by terraform apply and persisted as TOML."""

from __future__ import annotations

import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import InventoryError

log = logger

SCHEMA_VERSION = 1

_ID_KEYS = ('id', 'uuid', 'stable_id', 'moid')
_ADDR_KEYS = ('ip', 'address', 'ip_address', 'default_ip_address', 'declared_address')


@dataclass
class InventoryEntry:
    name: str
    stable_id: str = ''
    declared_address: str = ''


@dataclass
class InventorySnapshot:
    vms: list[InventoryEntry] = field(default_factory=list)
    template: str = ''
    created_at: str = ''
    schema_version: int = SCHEMA_VERSION

    @property
    def names(self) -> list[str]:
        return [vm.name for vm in self.vms]


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _first(body: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        val = body.get(key)
        if isinstance(val, list):
            val = next((v for v in val if v), '')
        if val:
            return str(val).strip()
    return ''


def _entry_from(name: str, body: Any) -> InventoryEntry:
    if not isinstance(body, dict):
        # ``{"web-1": "10.0.0.5"}`` style outputs carry only the address.
        return InventoryEntry(name=name, declared_address=str(body or '').strip())
    return InventoryEntry(
        name=name,
        stable_id=_first(body, _ID_KEYS),
        declared_address=_first(body, _ADDR_KEYS),
    )


def snapshot_from_outputs(
    outputs: dict, output_name: str = 'vms', *, template: str = ''
) -> InventorySnapshot:
    """Build a snapshot from ``terraform output -json`` data."""
    if output_name not in outputs:
        raise InventoryError(
            f'terraform output {output_name!r} not found '
            f'(available: {", ".join(sorted(outputs)) or "none"})'
        )
    raw = outputs[output_name]
    if isinstance(raw, dict) and 'value' in raw and 'type' in raw:
        raw = raw['value']
    snap = InventorySnapshot(
        template=template, created_at=time.strftime('%Y-%m-%dT%H:%M:%S%z')
    )
    seen: set[str] = set()
    if isinstance(raw, dict):
        items = [(str(k), v) for k, v in raw.items()]
    elif isinstance(raw, list):
        items = []
        for body in raw:
            name = str(body.get('name', '')).strip() if isinstance(body, dict) else ''
            if not name:
                log.warning('Skipping inventory item without a name: {!r}', body)
                continue
            items.append((name, body))
    else:
        raise InventoryError(
            f'terraform output {output_name!r} has unsupported shape: {type(raw).__name__}'
        )
    for name, body in items:
        if name in seen:
            log.warning('Duplicate VM name {} in terraform output; keeping first', name)
            continue
        seen.add(name)
        snap.vms.append(_entry_from(name, body))
    return snap


def save_inventory(snap: InventorySnapshot, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [f'schema_version = {snap.schema_version}']
    lines.append(f'template = "{_toml_escape(snap.template)}"')
    lines.append(f'created_at = "{_toml_escape(snap.created_at)}"')
    lines.append('')
    for vm in snap.vms:
        lines.append('[[vms]]')
        lines.append(f'name = "{_toml_escape(vm.name)}"')
        lines.append(f'stable_id = "{_toml_escape(vm.stable_id)}"')
        lines.append(f'declared_address = "{_toml_escape(vm.declared_address)}"')
        lines.append('')
    tmp = path.with_name(path.name + '.part')
    tmp.write_text('\n'.join(lines).rstrip() + '\n', encoding='utf-8')
    tmp.replace(path)
    log.info('Wrote inventory for {} VM(s) to {}', len(snap.vms), path)
    return path


def load_inventory(path: Path) -> InventorySnapshot:
    if not path.exists():
        raise InventoryError(
            f'Inventory not found: {path}. Run `vmdeploy deploy` first.'
        )
    try:
        raw = tomllib.loads(path.read_text(encoding='utf-8'))
    except (OSError, tomllib.TOMLDecodeError) as ex:
        raise InventoryError(f'Inventory unreadable: {path}: {ex}') from ex
    snap = InventorySnapshot(
        template=str(raw.get('template', '')),
        created_at=str(raw.get('created_at', '')),
        schema_version=int(raw.get('schema_version', SCHEMA_VERSION)),
    )
    for item in raw.get('vms', []):
        if not isinstance(item, dict):
            continue
        name = str(item.get('name', '')).strip()
        if not name:
            continue
        snap.vms.append(
            InventoryEntry(
                name=name,
                stable_id=str(item.get('stable_id', '')).strip(),
                declared_address=str(item.get('declared_address', '')).strip(),
            )
        )
    return snap
