"""Tests for the terraform plan runner."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from vmdeploy import plan
from vmdeploy.config import DeployConfig
from vmdeploy.errors import PlanFailure
from vmdeploy.inventory import load_inventory
from vmdeploy.util import CmdResult


def _cfg(tmp_path: Path) -> DeployConfig:
    (tmp_path / 'terraform').mkdir()
    cfg = DeployConfig()
    cfg.paths.project_root = str(tmp_path)
    cfg.vsphere.password = 'secret'
    return cfg


OUTPUTS = {'vms': {'type': 'map', 'value': {'web-1': {'id': 'abc', 'ip': '10.0.0.5'}}}}


def _fake_tf(calls: list, fail_on: str | None = None):
    def fake(cmd, **kwargs):
        calls.append((cmd, kwargs))
        sub = cmd[1]
        if sub == fail_on:
            return CmdResult(1, '', f'{sub} exploded')
        if sub == 'output':
            return CmdResult(0, json.dumps(OUTPUTS), '')
        return CmdResult(0, '', '')

    return fake


def test_apply_sequence_and_snapshot(monkeypatch, tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    calls: list = []
    monkeypatch.setattr('vmdeploy.plan.run_cmd', _fake_tf(calls))
    snap = plan.apply(cfg)
    subs = [c[0][1] for c in calls]
    assert subs == ['init', 'plan', 'apply', 'output']
    assert '-out=tfplan' in calls[1][0]
    assert calls[2][0][-2:] == ['-auto-approve', 'tfplan']
    assert calls[0][1]['cwd'] == tmp_path / 'terraform'
    assert calls[0][1]['env']['TF_VAR_vsphere_password'] == 'secret'
    assert snap.names == ['web-1']
    assert load_inventory(plan.inventory_path(cfg)).names == ['web-1']


def test_apply_failure_names_stage(monkeypatch, tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    calls: list = []
    monkeypatch.setattr('vmdeploy.plan.run_cmd', _fake_tf(calls, fail_on='plan'))
    with pytest.raises(PlanFailure) as ex:
        plan.apply(cfg)
    assert ex.value.plan_stage == 'plan'
    assert 'plan exploded' in str(ex.value)
    assert [c[0][1] for c in calls] == ['init', 'plan']


def test_missing_directory(tmp_path: Path) -> None:
    cfg = DeployConfig()
    cfg.paths.project_root = str(tmp_path)
    with pytest.raises(PlanFailure, match='directory not found'):
        plan.terraform_init(cfg)


def test_destroy_removes_inventory(monkeypatch, tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    calls: list = []
    monkeypatch.setattr('vmdeploy.plan.run_cmd', _fake_tf(calls))
    plan.apply(cfg)
    assert plan.inventory_path(cfg).exists()
    plan.destroy(cfg)
    assert calls[-1][0][:2] == ['terraform', 'destroy']
    assert not plan.inventory_path(cfg).exists()


def test_validate_config_fmt_is_only_a_warning(monkeypatch, tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)

    def fake(cmd, **kwargs):
        if cmd[1] == 'fmt':
            return CmdResult(3, 'main.tf\n', '')
        return CmdResult(0, '', '')

    monkeypatch.setattr('vmdeploy.plan.run_cmd', fake)
    warnings = plan.validate_config(cfg)
    assert len(warnings) == 1
    assert 'main.tf' in warnings[0]


def test_validate_config_invalid(monkeypatch, tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    calls: list = []
    monkeypatch.setattr('vmdeploy.plan.run_cmd', _fake_tf(calls, fail_on='validate'))
    with pytest.raises(PlanFailure) as ex:
        plan.validate_config(cfg)
    assert ex.value.plan_stage == 'validate'
