"""Tests for precondition checks."""

from __future__ import annotations

import pytest

from vmdeploy.config import DeployConfig
from vmdeploy.errors import PreconditionFailure, SourceUnavailable
from vmdeploy.validate import run_preconditions, server_host


class FakeClient:
    def __init__(self, *, about=None, present=True, templates=()):
        self._about = about
        self.present = present
        self.templates = list(templates)

    def about(self, *, timeout):
        if self._about is None:
            raise SourceUnavailable('govc', 'ServerFaultCode: Cannot complete login')
        return self._about

    def exists(self, name, *, timeout):
        return self.present

    def list_templates(self, pattern='*/templates/*', *, timeout):
        return self.templates


ABOUT = {'name': 'VMware vCenter', 'version': '8.0.2', 'build': '222'}


def _cfg() -> DeployConfig:
    cfg = DeployConfig()
    cfg.vsphere.server = 'https://vc.example.com/sdk'
    cfg.vsphere.user = 'admin'
    cfg.vsphere.password = 'pw'
    cfg.vsphere.datacenter = 'DC'
    cfg.vsphere.cluster = 'C'
    cfg.vsphere.datastore = 'DS'
    cfg.vsphere.network = 'VM Network'
    return cfg


@pytest.fixture
def healthy_host(monkeypatch):
    monkeypatch.setattr('vmdeploy.validate.check_commands', lambda need_secrets=False: ([], []))
    monkeypatch.setattr('vmdeploy.validate.icmp_probe', lambda host, timeout: True)
    monkeypatch.setattr('vmdeploy.plan.validate_config', lambda cfg: [])


def test_server_host() -> None:
    assert server_host('https://vc.example.com/sdk') == 'vc.example.com'
    assert server_host('vc.example.com') == 'vc.example.com'
    assert server_host('10.1.1.1:8443') == '10.1.1.1'


def test_all_checks_pass(healthy_host) -> None:
    report = run_preconditions(_cfg(), FakeClient(about=ABOUT), require_template=True)
    text = report.render()
    assert 'version 8.0.2' in text
    assert report.template_present is True
    assert '❌' not in text


def test_missing_settings_listed_together(healthy_host) -> None:
    cfg = _cfg()
    cfg.vsphere.password = ''
    cfg.vsphere.network = ''
    with pytest.raises(PreconditionFailure) as ex:
        run_preconditions(cfg, FakeClient(about=ABOUT))
    assert ex.value.problems == ['VSPHERE_PASSWORD', 'VSPHERE_NETWORK']


def test_missing_tools(monkeypatch) -> None:
    monkeypatch.setattr(
        'vmdeploy.validate.check_commands', lambda need_secrets=False: (['packer', 'govc'], [])
    )
    with pytest.raises(PreconditionFailure) as ex:
        run_preconditions(_cfg(), FakeClient(about=ABOUT))
    assert ex.value.problems == ['packer', 'govc']


def test_ping_blocked_falls_back_to_tcp(healthy_host, monkeypatch) -> None:
    monkeypatch.setattr('vmdeploy.validate.icmp_probe', lambda host, timeout: False)
    seen = []
    monkeypatch.setattr(
        'vmdeploy.validate.tcp_probe',
        lambda host, port, timeout: (seen.append((host, port)) or True),
    )
    run_preconditions(_cfg(), FakeClient(about=ABOUT))
    assert seen == [('vc.example.com', 443)]

    monkeypatch.setattr('vmdeploy.validate.tcp_probe', lambda host, port, timeout: False)
    with pytest.raises(PreconditionFailure, match='Cannot reach vCenter'):
        run_preconditions(_cfg(), FakeClient(about=ABOUT))


def test_bad_credentials(healthy_host) -> None:
    with pytest.raises(PreconditionFailure, match='credentials'):
        run_preconditions(_cfg(), FakeClient(about=None))


def test_template_missing(healthy_host) -> None:
    client = FakeClient(about=ABOUT, present=False, templates=['ubuntu-2204', 'rocky-9'])
    report = run_preconditions(_cfg(), client, require_template=False)
    assert report.template_present is False
    assert 'it will be built' in report.render()
    with pytest.raises(PreconditionFailure) as ex:
        run_preconditions(_cfg(), client, require_template=True)
    assert ex.value.problems == ['ubuntu-2204', 'rocky-9']


def test_terraform_warnings_are_collected(healthy_host, monkeypatch) -> None:
    monkeypatch.setattr('vmdeploy.plan.validate_config', lambda cfg: ['needs fmt'])
    report = run_preconditions(_cfg(), FakeClient(about=ABOUT))
    assert report.warnings == ['needs fmt']
