"""Tests for two-pass reachability verification."""

from __future__ import annotations

import threading
from pathlib import Path

from vmdeploy.config import DeployConfig
from vmdeploy.errors import SourceUnavailable
from vmdeploy.govc import VmInfo
from vmdeploy.inventory import InventoryEntry, InventorySnapshot, save_inventory
from vmdeploy.results import CANCELLED, NO_ADDRESS, REACHABLE, UNRESPONSIVE, AddressProbe
from vmdeploy.util import Deadline
from vmdeploy.verify import ReachabilityVerifier, verify_inventory


class FakeDeadline(Deadline):
    """Deadline that records settling waits instead of sleeping."""

    def __init__(self, *, cancel_on_wait: bool = False):
        super().__init__(None)
        self.waits: list[float] = []
        self.cancel_on_wait = cancel_on_wait

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        if self.cancel_on_wait:
            self.cancel()
        return self.cancelled


class FakeClient:
    def __init__(self, infos=None, hosts=None):
        self.infos = infos or {}
        self.hosts = hosts or {}
        self.info_calls: list[str] = []
        self.refreshed: list[str] = []
        self._lock = threading.Lock()

    def info(self, name_or_id, *, timeout):
        with self._lock:
            self.info_calls.append(name_or_id)
        val = self.infos.get(name_or_id)
        if isinstance(val, list):
            val = val.pop(0) if len(val) > 1 else val[0]
        if val is None:
            raise SourceUnavailable('govc', f'VM not found: {name_or_id}')
        if isinstance(val, Exception):
            raise val
        return val

    def refresh_addresses(self, vm_id, *, timeout):
        with self._lock:
            self.refreshed.append(vm_id)

    def host_name(self, host_ref, *, timeout):
        if host_ref not in self.hosts:
            raise SourceUnavailable('govc', 'no such host')
        return self.hosts[host_ref]


class FakeProbe:
    """Answers per address; a list gives successive answers per call."""

    def __init__(self, answers):
        self.answers = {k: (list(v) if isinstance(v, list) else v) for k, v in answers.items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, address, *, timeout, tcp_port=None):
        with self._lock:
            self.calls.append(address)
            ans = self.answers.get(address, False)
            if isinstance(ans, list):
                ans = ans.pop(0) if len(ans) > 1 else ans[0]
        return AddressProbe(address, ans, 'icmp' if ans else '', '' if ans else 'no reply')


def _cfg() -> DeployConfig:
    cfg = DeployConfig()
    cfg.verify.settle_s = 30.0
    cfg.verify.guest_query = False
    return cfg


def _snap(*entries: InventoryEntry) -> InventorySnapshot:
    return InventorySnapshot(vms=list(entries))


def _verifier(cfg, client, probe, deadline=None, guest_query=None):
    kwargs = {}
    if guest_query is not None:
        kwargs['guest_query'] = guest_query
    return ReachabilityVerifier(
        cfg, client, deadline=deadline or FakeDeadline(), probe=probe, **kwargs
    )


def test_reachable_on_first_pass_skips_retry() -> None:
    cfg = _cfg()
    client = FakeClient({'id-web': VmInfo('web-1', 'id-web', ('10.0.0.5',), 'poweredOn')})
    probe = FakeProbe({'10.0.0.5': True})
    deadline = FakeDeadline()
    outcome = _verifier(cfg, client, probe, deadline).verify(
        _snap(InventoryEntry('web-1', 'id-web', '10.0.0.5'))
    )
    rec = outcome.per_vm['web-1']
    assert rec.diagnostic == REACHABLE
    assert rec.reachable_addresses == ['10.0.0.5']
    assert rec.hint == 'ssh ubuntu@10.0.0.5'
    assert outcome.all_reachable
    assert outcome.pass2_ran is False
    assert deadline.waits == []
    assert client.refreshed == []


def test_unresponsive_in_both_passes_gets_triage() -> None:
    cfg = _cfg()
    info = VmInfo('db-1', 'id-db', ('10.0.0.9',), 'poweredOn', 'HostSystem:host-3')
    client = FakeClient({'id-db': info}, hosts={'HostSystem:host-3': '/DC/host/esx03'})
    probe = FakeProbe({'10.0.0.9': False})
    deadline = FakeDeadline()
    outcome = _verifier(cfg, client, probe, deadline).verify(
        _snap(InventoryEntry('db-1', 'id-db', '10.0.0.9'))
    )
    rec = outcome.per_vm['db-1']
    assert outcome.unreachable_names == ('db-1',)
    assert outcome.pass2_ran
    assert rec.diagnostic == UNRESPONSIVE
    assert rec.passes == 2
    assert rec.power_state == 'poweredOn'
    assert rec.host == '/DC/host/esx03 (HostSystem:host-3)'
    assert rec.hint == 'ssh ubuntu@10.0.0.9  # currently unreachable'
    assert deadline.waits == [30.0]
    assert client.refreshed == ['id-db']
    assert probe.calls == ['10.0.0.9', '10.0.0.9']


def test_reachable_verdict_is_never_revoked() -> None:
    cfg = _cfg()
    client = FakeClient(
        {
            'a': VmInfo('a', 'a', ('10.0.0.1',)),
            'b': VmInfo('b', 'b', ('10.0.0.2',)),
        }
    )
    # a answers once then goes dark; b only answers on the second attempt.
    probe = FakeProbe({'10.0.0.1': [True, False], '10.0.0.2': [False, True]})
    outcome = _verifier(cfg, client, probe).verify(
        _snap(InventoryEntry('a', 'a', ''), InventoryEntry('b', 'b', ''))
    )
    assert outcome.per_vm['a'].reachable
    assert outcome.per_vm['a'].passes == 1
    assert outcome.per_vm['b'].reachable
    assert outcome.per_vm['b'].passes == 2
    assert outcome.all_reachable
    assert probe.calls.count('10.0.0.1') == 1
    assert client.refreshed == ['b']


def test_no_address_is_distinct_from_unresponsive() -> None:
    cfg = _cfg()
    client = FakeClient({})
    probe = FakeProbe({})
    outcome = _verifier(cfg, client, probe).verify(_snap(InventoryEntry('ghost', '', '')))
    rec = outcome.per_vm['ghost']
    assert rec.diagnostic == NO_ADDRESS
    assert rec.probes == []
    assert probe.calls == []
    assert rec.hint == '(no address known)'
    assert any(err.startswith('management:') for err in rec.source_errors)


def test_failed_source_does_not_change_verdict() -> None:
    cfg = _cfg()
    cfg.verify.guest_query = True

    def broken_guest(cfg, address, *, timeout):
        raise SourceUnavailable('guest', 'ssh refused')

    client = FakeClient({'web-1': SourceUnavailable('govc', 'timed out')})
    probe = FakeProbe({'10.0.0.5': True})
    outcome = _verifier(cfg, client, probe, guest_query=broken_guest).verify(
        _snap(InventoryEntry('web-1', '', '10.0.0.5'))
    )
    rec = outcome.per_vm['web-1']
    assert rec.reachable
    assert outcome.pass2_ran is False
    assert 'management: timed out' in rec.source_errors
    assert 'guest: ssh refused' in rec.source_errors


def test_addresses_are_merged_across_sources() -> None:
    cfg = _cfg()
    cfg.verify.guest_query = True
    client = FakeClient({'id-1': VmInfo('vm', 'id-1', ('10.0.0.5', 'fe80::1', '192.168.9.2'))})
    probe = FakeProbe({'172.16.0.4': True})

    def guest(cfg, address, *, timeout):
        assert address == '10.0.0.5'
        return ['10.0.0.5', '172.16.0.4', '127.0.0.1']

    outcome = _verifier(cfg, client, probe, guest_query=guest).verify(
        _snap(InventoryEntry('vm', 'id-1', '10.0.0.5'))
    )
    rec = outcome.per_vm['vm']
    assert rec.discovered_addresses == ['10.0.0.5', '192.168.9.2', '172.16.0.4']
    assert rec.reachable_addresses == ['172.16.0.4']
    assert rec.unreachable_addresses == ['10.0.0.5', '192.168.9.2']
    assert rec.hint == 'ssh ubuntu@172.16.0.4'


def test_address_collisions_are_reported() -> None:
    cfg = _cfg()
    client = FakeClient(
        {
            'id-a': VmInfo('a', 'id-a', ('10.0.0.5',)),
            'id-b': VmInfo('b', 'id-b', ('10.0.0.5',)),
        }
    )
    probe = FakeProbe({'10.0.0.5': True})
    outcome = _verifier(cfg, client, probe).verify(
        _snap(InventoryEntry('a', 'id-a', ''), InventoryEntry('b', 'id-b', ''))
    )
    assert outcome.collisions == {'10.0.0.5': ('a', 'b')}
    assert outcome.all_reachable


def test_cancellation_during_settle_gives_partial_outcome() -> None:
    cfg = _cfg()
    client = FakeClient({'id-db': VmInfo('db-1', 'id-db', ('10.0.0.9',), 'poweredOff')})
    probe = FakeProbe({'10.0.0.9': False})
    deadline = FakeDeadline(cancel_on_wait=True)
    outcome = _verifier(cfg, client, probe, deadline).verify(
        _snap(InventoryEntry('db-1', 'id-db', '10.0.0.9'))
    )
    rec = outcome.per_vm['db-1']
    assert outcome.cancelled
    assert outcome.pass2_ran
    assert rec.passes == 1
    assert rec.diagnostic == UNRESPONSIVE
    assert outcome.unreachable_names == ('db-1',)
    assert probe.calls == ['10.0.0.9']


def test_cancelled_before_start() -> None:
    cfg = _cfg()
    deadline = FakeDeadline()
    deadline.cancel()
    outcome = _verifier(cfg, FakeClient({}), FakeProbe({}), deadline).verify(
        _snap(InventoryEntry('web-1', '', '10.0.0.5'))
    )
    assert outcome.cancelled
    assert outcome.pass2_ran is False
    assert outcome.per_vm['web-1'].diagnostic == CANCELLED
    assert deadline.waits == []


def test_verify_inventory_reads_artifact(monkeypatch, tmp_path: Path) -> None:
    path = tmp_path / 'inventory.toml'
    save_inventory(_snap(InventoryEntry('web-1', '', '10.0.0.5')), path)
    monkeypatch.setattr(
        'vmdeploy.verify.probe_address',
        lambda address, *, timeout, tcp_port=None: AddressProbe(address, True, 'icmp'),
    )
    client = FakeClient({'web-1': VmInfo('web-1', '', ('10.0.0.5',))})
    outcome = verify_inventory(_cfg(), client, path, deadline=FakeDeadline())
    assert outcome.per_vm['web-1'].reachable
    assert client.info_calls == ['web-1']


def test_second_pass_queries_sources_again() -> None:
    cfg = _cfg()
    client = FakeClient(
        {
            'id-db': [
                VmInfo('db-1', 'id-db', ('10.0.0.9',), 'poweredOn'),
                VmInfo('db-1', 'id-db', ('10.0.0.10',), 'poweredOn'),
            ]
        }
    )
    probe = FakeProbe({'10.0.0.10': True})
    outcome = _verifier(cfg, client, probe).verify(_snap(InventoryEntry('db-1', 'id-db', '')))
    rec = outcome.per_vm['db-1']
    assert rec.reachable
    assert rec.passes == 2
    assert rec.discovered_addresses == ['10.0.0.10']
    assert client.info_calls == ['id-db', 'id-db']
    assert probe.calls == ['10.0.0.9', '10.0.0.10']


class RefreshFailingClient(FakeClient):
    def refresh_addresses(self, vm_id, *, timeout):
        super().refresh_addresses(vm_id, timeout=timeout)
        raise SourceUnavailable('govc', 'vm.ip timed out')


def test_refresh_failure_does_not_block_second_pass() -> None:
    cfg = _cfg()
    client = RefreshFailingClient({'id-web': VmInfo('web-1', 'id-web', ('10.0.0.5',))})
    probe = FakeProbe({'10.0.0.5': [False, True]})
    deadline = FakeDeadline()
    outcome = _verifier(cfg, client, probe, deadline).verify(
        _snap(InventoryEntry('web-1', 'id-web', '10.0.0.5'))
    )
    rec = outcome.per_vm['web-1']
    assert client.refreshed == ['id-web']
    assert outcome.pass2_ran
    assert deadline.waits == [30.0]
    assert rec.reachable
    assert rec.passes == 2
