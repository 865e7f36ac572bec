"""Result dataclasses produced by reachability verification."""

from __future__ import annotations

from dataclasses import dataclass, field

REACHABLE = 'reachable'
NO_ADDRESS = 'no-address'
UNRESPONSIVE = 'address-unresponsive'
CANCELLED = 'cancelled'


@dataclass(frozen=True)
class AddressProbe:
    address: str
    reachable: bool
    method: str = ''
    detail: str = ''


@dataclass
class VmRecord:
    name: str
    stable_id: str = ''
    declared_address: str = ''
    discovered_addresses: list[str] = field(default_factory=list)
    probes: list[AddressProbe] = field(default_factory=list)
    power_state: str = ''
    host: str = ''
    source_errors: list[str] = field(default_factory=list)
    diagnostic: str = NO_ADDRESS
    passes: int = 0
    hint: str = ''

    @property
    def reachable(self) -> bool:
        return self.diagnostic == REACHABLE

    @property
    def reachable_addresses(self) -> list[str]:
        return [p.address for p in self.probes if p.reachable]

    @property
    def unreachable_addresses(self) -> list[str]:
        return [p.address for p in self.probes if not p.reachable]

    def best_address(self) -> str:
        """The most promising address to hand an operator."""
        reachable = self.reachable_addresses
        if reachable:
            return reachable[0]
        if self.declared_address:
            return self.declared_address
        if self.discovered_addresses:
            return self.discovered_addresses[0]
        return ''

    def as_dict(self) -> dict[str, object]:
        return {
            'name': self.name,
            'stable_id': self.stable_id,
            'declared_address': self.declared_address,
            'discovered_addresses': list(self.discovered_addresses),
            'reachable_addresses': self.reachable_addresses,
            'unreachable_addresses': self.unreachable_addresses,
            'power_state': self.power_state,
            'host': self.host,
            'diagnostic': self.diagnostic,
            'source_errors': list(self.source_errors),
            'passes': self.passes,
            'hint': self.hint,
        }


@dataclass(frozen=True)
class RunOutcome:
    per_vm: dict[str, VmRecord]
    unreachable_names: tuple[str, ...] = ()
    collisions: dict[str, tuple[str, ...]] = field(default_factory=dict)
    pass2_ran: bool = False
    cancelled: bool = False

    @property
    def total_count(self) -> int:
        return len(self.per_vm)

    @property
    def reachable_count(self) -> int:
        return sum(1 for rec in self.per_vm.values() if rec.reachable)

    @property
    def all_reachable(self) -> bool:
        return not self.unreachable_names

    def as_dict(self) -> dict[str, object]:
        return {
            'total_count': self.total_count,
            'reachable_count': self.reachable_count,
            'unreachable_names': list(self.unreachable_names),
            'collisions': {k: list(v) for k, v in self.collisions.items()},
            'pass2_ran': self.pass2_ran,
            'cancelled': self.cancelled,
            'vms': [rec.as_dict() for rec in self.per_vm.values()],
        }
