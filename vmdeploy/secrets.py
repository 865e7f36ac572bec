"""Credentials from a SOPS-encrypted dotenv file, applied onto the config."""

from __future__ import annotations

import io
import os
from pathlib import Path

from dotenv import dotenv_values
from loguru import logger

from .config import DeployConfig
from .errors import PreconditionFailure
from .util import run_cmd

log = logger


def decrypt_secrets(path: Path, *, age_key_file: str = '', timeout: float = 60) -> dict[str, str]:
    if not path.exists():
        raise PreconditionFailure(f'secrets file not found: {path}')
    env = {'SOPS_AGE_KEY_FILE': age_key_file} if age_key_file else None
    res = run_cmd(
        ['sops', '--decrypt', str(path)],
        check=False,
        capture=True,
        env=env,
        timeout=timeout,
    )
    if res.code != 0:
        raise PreconditionFailure(
            f'could not decrypt {path}: {(res.stderr or "").strip() or res.code}'
        )
    values = dotenv_values(stream=io.StringIO(res.stdout))
    return {k: v for k, v in values.items() if v is not None}


def apply_credentials(cfg: DeployConfig, *, environ=None) -> DeployConfig:
    """Layer secrets-file values, then process environment, onto ``cfg``."""
    if cfg.paths.secrets_file:
        values = decrypt_secrets(
            cfg.resolve(cfg.paths.secrets_file),
            age_key_file=cfg.paths.sops_age_key_file,
        )
        used = cfg.apply_overrides(values)
        log.debug('Applied {} value(s) from secrets file', len(used))
    used = cfg.apply_overrides(os.environ if environ is None else environ)
    if used:
        log.debug('Applied environment overrides: {}', ', '.join(used))
    return cfg
