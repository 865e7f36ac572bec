"""Golden image lifecycle: existence check, packer build, build-log rotation."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .config import DeployConfig
from .errors import BuildFailure, SourceUnavailable
from .govc import GovcClient
from .runtime import packer_env, packer_var_args
from .util import ensure_dir, rotate_file, run_cmd

log = logger


@dataclass(frozen=True)
class TemplateResult:
    already_existed: bool
    log_path: str = ''


def template_exists(cfg: DeployConfig, client: GovcClient) -> bool:
    """Bounded existence check; an unanswered query counts as not found."""
    name = cfg.template.name
    try:
        found = client.exists(name, timeout=cfg.template.check_timeout_s)
    except SourceUnavailable as ex:
        log.warning(
            'Could not confirm template {} exists ({}); treating as missing',
            name,
            ex.detail,
        )
        return False
    log.debug('Template {} exists={}', name, found)
    return found


def build_template(cfg: DeployConfig) -> Path:
    """Run packer init + build. Raises BuildFailure on any non-zero exit."""
    packer_dir = cfg.resolve(cfg.packer.directory)
    log_path = cfg.resolve(cfg.packer.log_file)
    ensure_dir(log_path.parent)
    rotated = rotate_file(log_path)
    if rotated is not None:
        log.info('Previous build log kept at {}', rotated)
    if not packer_dir.is_dir():
        raise BuildFailure(f'packer directory not found: {packer_dir}', str(log_path))
    env = packer_env(cfg, log_path)
    log.info('Building new template {} using Packer...', cfg.template.name)
    log.info('Starting Packer init...')
    res = run_cmd(
        ['packer', 'init', cfg.packer.template_file],
        check=False,
        capture=True,
        cwd=packer_dir,
        env=env,
        timeout=600,
    )
    if res.code != 0:
        raise BuildFailure(
            f'packer init failed (code={res.code}): {(res.stderr or res.stdout).strip()}',
            str(log_path),
        )
    log.info('Starting Packer build...')
    res = run_cmd(
        ['packer', 'build', *packer_var_args(cfg), cfg.packer.template_file],
        check=False,
        capture=False,
        cwd=packer_dir,
        env=env,
        timeout=cfg.packer.build_timeout_s,
    )
    if res.timed_out:
        raise BuildFailure(
            f'packer build timed out after {cfg.packer.build_timeout_s}s',
            str(log_path),
        )
    if res.code != 0:
        raise BuildFailure(f'packer build failed (code={res.code})', str(log_path))
    log.info('Template {} built', cfg.template.name)
    return log_path


def ensure_template(cfg: DeployConfig, client: GovcClient) -> TemplateResult:
    if template_exists(cfg, client):
        log.info('Template {} already exists; skipping build', cfg.template.name)
        return TemplateResult(already_existed=True)
    log_path = build_template(cfg)
    return TemplateResult(already_existed=False, log_path=str(log_path))
