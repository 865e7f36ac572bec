"""Terraform plan runner: init -> plan -> apply, inventory snapshot, destroy."""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger

from .config import DeployConfig
from .errors import InventoryError, PlanFailure
from .inventory import InventorySnapshot, save_inventory, snapshot_from_outputs
from .report import clip
from .runtime import terraform_env
from .util import CmdResult, run_cmd

log = logger


def _tf(
    cfg: DeployConfig,
    stage: str,
    *args: str,
    capture: bool = True,
    timeout: float | None = None,
) -> CmdResult:
    tf_dir = cfg.resolve(cfg.terraform.directory)
    if not tf_dir.is_dir():
        raise PlanFailure(stage, f'terraform directory not found: {tf_dir}')
    res = run_cmd(
        ['terraform', *args],
        check=False,
        capture=capture,
        cwd=tf_dir,
        env=terraform_env(cfg),
        timeout=timeout if timeout is not None else cfg.terraform.timeout_s,
    )
    if res.code != 0:
        detail = clip(res.stderr or res.stdout or '', max_lines=40)
        if not detail:
            detail = f'exit code {res.code}'
        raise PlanFailure(stage, detail)
    return res


def terraform_init(cfg: DeployConfig) -> None:
    log.info('Initializing Terraform...')
    _tf(cfg, 'init', 'init', '-input=false', capture=False)


def terraform_plan(cfg: DeployConfig) -> None:
    log.info('Creating Terraform plan...')
    _tf(
        cfg,
        'plan',
        'plan',
        '-input=false',
        f'-out={cfg.terraform.plan_file}',
        capture=False,
    )


def terraform_apply(cfg: DeployConfig) -> None:
    log.info('Applying Terraform configuration...')
    _tf(
        cfg,
        'apply',
        'apply',
        '-input=false',
        '-auto-approve',
        cfg.terraform.plan_file,
        capture=False,
    )


def read_outputs(cfg: DeployConfig) -> dict:
    res = _tf(cfg, 'output', 'output', '-json', timeout=120)
    try:
        data = json.loads(res.stdout or '{}')
    except json.JSONDecodeError as ex:
        raise PlanFailure('output', f'unparsable JSON: {ex}') from ex
    if not isinstance(data, dict):
        raise PlanFailure('output', 'expected a JSON object of outputs')
    return data


def inventory_path(cfg: DeployConfig) -> Path:
    return cfg.resolve(cfg.paths.inventory_file)


def snapshot_inventory(cfg: DeployConfig) -> InventorySnapshot:
    outputs = read_outputs(cfg)
    try:
        snap = snapshot_from_outputs(
            outputs, cfg.terraform.inventory_output, template=cfg.template.name
        )
    except InventoryError as ex:
        raise PlanFailure('output', str(ex)) from ex
    save_inventory(snap, inventory_path(cfg))
    return snap


def apply(cfg: DeployConfig) -> InventorySnapshot:
    """Run init, plan and apply, then persist the resulting inventory."""
    terraform_init(cfg)
    terraform_plan(cfg)
    terraform_apply(cfg)
    snap = snapshot_inventory(cfg)
    log.info('Terraform apply produced {} VM(s): {}', len(snap.vms), ', '.join(snap.names))
    return snap


def destroy(cfg: DeployConfig) -> None:
    log.warning('Destroying infrastructure...')
    _tf(cfg, 'destroy', 'destroy', '-input=false', '-auto-approve', capture=False)
    inv = inventory_path(cfg)
    if inv.exists():
        inv.unlink()
        log.info('Removed inventory {}', inv)


def validate_config(cfg: DeployConfig) -> list[str]:
    """Check the terraform configuration; return non-fatal warnings."""
    warnings: list[str] = []
    _tf(cfg, 'validate', 'init', '-backend=false', '-input=false', timeout=600)
    log.info('Terraform initialized successfully')
    _tf(cfg, 'validate', 'validate', timeout=300)
    log.info('Terraform configuration is valid')
    fmt = run_cmd(
        ['terraform', 'fmt', '-check'],
        check=False,
        capture=True,
        cwd=cfg.resolve(cfg.terraform.directory),
        timeout=120,
    )
    if fmt.code != 0:
        files = ', '.join(fmt.stdout.split()) or 'unknown files'
        msg = f"Some Terraform files need formatting ({files}); run 'terraform fmt'"
        log.warning(msg)
        warnings.append(msg)
    return warnings
