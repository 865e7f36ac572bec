"""Rendering of reachability outcomes and precondition checks."""

from __future__ import annotations

from .results import NO_ADDRESS, RunOutcome, VmRecord


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


def clip(text: str, *, max_lines: int = 60) -> str:
    lines = (text or '').strip().splitlines()
    if len(lines) <= max_lines:
        return '\n'.join(lines)
    keep: list[str] = list(lines[:max_lines])
    keep.append(f'... ({len(lines) - max_lines} more lines)')
    return '\n'.join(keep)


def _unreachable_lines(rec: VmRecord) -> list[str]:
    lines = []
    if rec.diagnostic == NO_ADDRESS:
        lines.append(f'❌ {rec.name} - no address discovered from any source')
    else:
        lines.append(f'❌ {rec.name} - {rec.diagnostic}')
    for probe in rec.probes:
        mark = 'ok' if probe.reachable else 'no answer'
        extra = f' ({probe.detail})' if probe.detail else ''
        lines.append(f'    {probe.address}: {mark}{extra}')
    untried = [a for a in rec.discovered_addresses if a not in {p.address for p in rec.probes}]
    for addr in untried:
        lines.append(f'    {addr}: not probed')
    lines.append(f'    power state: {rec.power_state or "unknown"}')
    lines.append(f'    host: {rec.host or "unknown"}')
    for err in rec.source_errors:
        lines.append(f'    source: {err}')
    lines.append(f'    hint: {rec.hint}')
    return lines


def render_outcome(outcome: RunOutcome) -> str:
    """Human report: success section, then a separate warning section."""
    reachable = [r for r in outcome.per_vm.values() if r.reachable]
    lines: list[str] = []
    lines.append(
        f'🖥️  Reachability: {outcome.reachable_count}/{outcome.total_count} VM(s) reachable'
    )
    if outcome.cancelled:
        lines.append('⚠️  Verification was cancelled; results are partial.')
    lines.append('')
    lines.append('Reachable VMs')
    if not reachable:
        lines.append('  (none)')
    for rec in reachable:
        lines.append(
            '  ' + status_line(True, rec.name, ', '.join(rec.reachable_addresses))
        )
        lines.append(f'    {rec.hint}')
    if outcome.unreachable_names:
        lines.append('')
        lines.append(
            f'⚠️  WARNING: {len(outcome.unreachable_names)} VM(s) unreachable '
            '(they may still be booting)'
        )
        for name in outcome.unreachable_names:
            lines.extend('  ' + ln for ln in _unreachable_lines(outcome.per_vm[name]))
    if outcome.collisions:
        lines.append('')
        lines.append('⚠️  Address collisions')
        for addr, names in outcome.collisions.items():
            lines.append(f'  {addr}: {", ".join(names)}')
    return '\n'.join(lines)
