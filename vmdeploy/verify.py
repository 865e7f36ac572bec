"""Two-pass reachability verification of freshly provisioned VMs.

Pass 1 evaluates every VM in the inventory concurrently: addresses are
gathered from the declared inventory address, the management system and
the guest itself, merged, then each address is probed. VMs with no
reachable address are queued for Pass 2, which nudges the management
system to refresh guest networking, waits once for a shared settling
delay, and re-evaluates the queued VMs from fresh source queries. Only
Pass-1 failures are re-evaluated, so a reachable verdict is never revoked.

Workers return :class:`VmRecord` values; the coordinating thread merges
them. Every external call is bounded by the run :class:`Deadline`, whose
cancellation also cuts the settling wait short and yields a partial
:class:`RunOutcome`.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable

from loguru import logger

from .config import DeployConfig
from .errors import SourceUnavailable
from .govc import GovcClient, VmInfo
from .inventory import InventoryEntry, InventorySnapshot, load_inventory
from .probe import merge_addresses, probe_address, query_guest_addresses
from .results import (
    CANCELLED,
    NO_ADDRESS,
    REACHABLE,
    UNRESPONSIVE,
    AddressProbe,
    RunOutcome,
    VmRecord,
)
from .runtime import ssh_hint
from .util import Deadline

log = logger

ProbeFn = Callable[..., AddressProbe]
GuestQueryFn = Callable[..., list]


class ReachabilityVerifier:
    def __init__(
        self,
        cfg: DeployConfig,
        client: GovcClient,
        *,
        deadline: Deadline | None = None,
        probe: ProbeFn | None = None,
        guest_query: GuestQueryFn | None = None,
    ):
        self.cfg = cfg
        self.client = client
        self.deadline = deadline or Deadline(cfg.verify.deadline_s)
        self.probe = probe or probe_address
        self.guest_query = guest_query or query_guest_addresses

    # -- per-VM evaluation (runs on worker threads) --

    def _management_info(self, entry: InventoryEntry, errors: list[str]) -> VmInfo | None:
        key = entry.stable_id or entry.name
        try:
            return self.client.info(
                key, timeout=self.deadline.bound(self.cfg.verify.source_timeout_s)
            )
        except SourceUnavailable as ex:
            errors.append(f'management: {ex.detail}')
            return None

    def _guest_addresses(
        self, entry: InventoryEntry, info: VmInfo | None, errors: list[str]
    ) -> list[str]:
        if not self.cfg.verify.guest_query:
            return []
        target = entry.declared_address
        if not target and info is not None and info.addresses:
            target = info.addresses[0]
        if not target:
            return []
        try:
            return list(
                self.guest_query(
                    self.cfg,
                    target,
                    timeout=self.deadline.bound(self.cfg.verify.source_timeout_s),
                )
            )
        except SourceUnavailable as ex:
            errors.append(f'guest: {ex.detail}')
            return []

    def gather(self, entry: InventoryEntry) -> tuple[list[str], VmInfo | None, list[str]]:
        """Collect addresses from all sources; a failed source contributes nothing."""
        errors: list[str] = []
        declared = [entry.declared_address] if entry.declared_address else []
        info = self._management_info(entry, errors)
        if self.deadline.cancelled:
            return merge_addresses(declared, info.addresses if info else ()), info, errors
        guest = self._guest_addresses(entry, info, errors)
        merged = merge_addresses(declared, info.addresses if info else (), guest)
        return merged, info, errors

    def evaluate(self, entry: InventoryEntry, pass_no: int) -> VmRecord:
        rec = VmRecord(
            name=entry.name,
            stable_id=entry.stable_id,
            declared_address=entry.declared_address,
            passes=pass_no,
        )
        if self.deadline.cancelled:
            rec.diagnostic = CANCELLED
            return rec
        addresses, info, errors = self.gather(entry)
        rec.discovered_addresses = addresses
        rec.source_errors = errors
        if info is not None:
            rec.power_state = info.power_state
            rec.host = info.host
        if not addresses:
            rec.diagnostic = NO_ADDRESS
            log.info('VM {} (pass {}): no address discovered', entry.name, pass_no)
            return rec
        for addr in addresses:
            if self.deadline.cancelled:
                break
            rec.probes.append(
                self.probe(
                    addr,
                    timeout=self.deadline.bound(self.cfg.verify.probe_timeout_s),
                    tcp_port=self.cfg.verify.tcp_port,
                )
            )
        if rec.reachable_addresses:
            rec.diagnostic = REACHABLE
        elif len(rec.probes) < len(addresses):
            rec.diagnostic = CANCELLED
        else:
            rec.diagnostic = UNRESPONSIVE
        log.info(
            'VM {} (pass {}): {} addresses={} reachable={}',
            entry.name,
            pass_no,
            rec.diagnostic,
            ','.join(addresses),
            ','.join(rec.reachable_addresses) or '-',
        )
        return rec

    def _evaluate_safe(self, entry: InventoryEntry, pass_no: int) -> VmRecord:
        try:
            return self.evaluate(entry, pass_no)
        except Exception as ex:
            log.exception('Unexpected error evaluating VM {}', entry.name)
            rec = VmRecord(
                name=entry.name,
                stable_id=entry.stable_id,
                declared_address=entry.declared_address,
                passes=pass_no,
                diagnostic=UNRESPONSIVE if entry.declared_address else NO_ADDRESS,
            )
            rec.source_errors.append(f'internal: {ex}')
            return rec

    # -- sweeps (coordinating thread) --

    def _workers(self, count: int) -> int:
        return max(1, min(int(self.cfg.verify.max_workers), count))

    def _sweep(self, entries: list[InventoryEntry], pass_no: int) -> dict[str, VmRecord]:
        results: dict[str, VmRecord] = {}
        if not entries:
            return results
        with ThreadPoolExecutor(
            max_workers=self._workers(len(entries)),
            thread_name_prefix=f'verify-pass{pass_no}',
        ) as pool:
            futures = {
                pool.submit(self._evaluate_safe, entry, pass_no): entry
                for entry in entries
            }
            try:
                for fut in as_completed(futures):
                    rec = fut.result()
                    results[rec.name] = rec
            except KeyboardInterrupt:
                log.warning('Interrupted; cancelling in-flight reachability checks')
                self.deadline.cancel()
                for fut in futures:
                    if fut.done() and not fut.cancelled():
                        rec = fut.result()
                        results[rec.name] = rec
                    else:
                        fut.cancel()
        return results

    def _refresh_one(self, entry: InventoryEntry) -> None:
        try:
            self.client.refresh_addresses(
                entry.stable_id or entry.name,
                timeout=self.deadline.bound(self.cfg.verify.source_timeout_s),
            )
        except Exception as ex:
            log.debug('Address refresh for {} failed: {}', entry.name, ex)

    def _refresh_and_settle(self, queued: list[InventoryEntry]) -> bool:
        """Fire refresh requests, then wait once; True if the wait was cut short."""
        settle = float(self.cfg.verify.settle_s)
        with ThreadPoolExecutor(
            max_workers=self._workers(len(queued)),
            thread_name_prefix='verify-refresh',
        ) as pool:
            for entry in queued:
                pool.submit(self._refresh_one, entry)
            log.info(
                'Waiting {}s for guest networking to settle before retrying {} VM(s)',
                settle,
                len(queued),
            )
            try:
                interrupted = self.deadline.wait(settle)
            except KeyboardInterrupt:
                self.deadline.cancel()
                interrupted = True
        if interrupted:
            log.warning('Settling wait cut short by cancellation')
        return interrupted

    def _triage(self, rec: VmRecord) -> None:
        """Attach power state and host placement to a terminally unreachable VM."""
        if self.deadline.cancelled:
            return
        timeout = self.deadline.bound(self.cfg.verify.source_timeout_s)
        if not rec.power_state:
            try:
                info = self.client.info(rec.stable_id or rec.name, timeout=timeout)
            except SourceUnavailable as ex:
                rec.source_errors.append(f'triage: {ex.detail}')
                return
            rec.power_state = info.power_state
            rec.host = rec.host or info.host
        if rec.host and ':' in rec.host:
            try:
                name = self.client.host_name(rec.host, timeout=timeout)
            except SourceUnavailable as ex:
                rec.source_errors.append(f'host lookup: {ex.detail}')
                return
            if name and name != rec.host:
                rec.host = f'{name} ({rec.host})'

    def _hint(self, rec: VmRecord) -> str:
        addr = rec.best_address()
        if not addr:
            return '(no address known)'
        hint = ssh_hint(self.cfg, addr)
        if rec.reachable:
            return hint
        return f'{hint}  # currently unreachable'

    @staticmethod
    def find_collisions(records: Iterable[VmRecord]) -> dict[str, tuple[str, ...]]:
        owners: dict[str, list[VmRecord]] = {}
        for rec in records:
            for addr in rec.discovered_addresses:
                owners.setdefault(addr, []).append(rec)
        collisions: dict[str, tuple[str, ...]] = {}
        for addr, recs in owners.items():
            identities = {r.stable_id or r.name for r in recs}
            if len(identities) > 1:
                collisions[addr] = tuple(r.name for r in recs)
        return collisions

    def verify(self, snapshot: InventorySnapshot) -> RunOutcome:
        entries = list(snapshot.vms)
        log.info('Verifying reachability of {} VM(s)', len(entries))
        first = self._sweep(entries, 1)
        records: dict[str, VmRecord] = {}
        for entry in entries:
            rec = first.get(entry.name)
            if rec is None:
                rec = VmRecord(
                    name=entry.name,
                    stable_id=entry.stable_id,
                    declared_address=entry.declared_address,
                    diagnostic=CANCELLED,
                )
            records[entry.name] = rec

        queued = [e for e in entries if not records[e.name].reachable]
        pass2_ran = False
        if queued and not self.deadline.cancelled:
            pass2_ran = True
            log.info(
                '{} VM(s) unreachable after first sweep: {}',
                len(queued),
                ', '.join(e.name for e in queued),
            )
            if not self._refresh_and_settle(queued):
                second = self._sweep(queued, 2)
                for entry in queued:
                    rec = second.get(entry.name)
                    if rec is not None and rec.diagnostic != CANCELLED:
                        records[entry.name] = rec
        elif not queued:
            log.info('All VMs reachable on first sweep; skipping retry')

        unreachable = tuple(e.name for e in entries if not records[e.name].reachable)
        for name in unreachable:
            if records[name].diagnostic != CANCELLED:
                self._triage(records[name])
        for rec in records.values():
            rec.hint = self._hint(rec)

        collisions = self.find_collisions(records.values())
        for addr, names in collisions.items():
            log.warning(
                'Address {} reported for multiple VMs: {}', addr, ', '.join(names)
            )
        outcome = RunOutcome(
            per_vm=records,
            unreachable_names=unreachable,
            collisions=collisions,
            pass2_ran=pass2_ran,
            cancelled=self.deadline.cancelled,
        )
        log.info(
            'Reachability: {}/{} VM(s) reachable', outcome.reachable_count, outcome.total_count
        )
        return outcome


def verify_inventory(
    cfg: DeployConfig,
    client: GovcClient,
    path: Path,
    *,
    deadline: Deadline | None = None,
) -> RunOutcome:
    """Load the persisted inventory and verify it; InventoryError if unreadable."""
    snap = load_inventory(path)
    return ReachabilityVerifier(cfg, client, deadline=deadline).verify(snap)
