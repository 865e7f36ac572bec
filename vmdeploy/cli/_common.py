from __future__ import annotations

import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import DEFAULT_CONFIG_NAME, DeployConfig, load
from ..coordinator import RunResult
from ..secrets import apply_credentials

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help=f'Path to config TOML (default: {DEFAULT_CONFIG_NAME}).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Auto-approve destructive operations.',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p or DEFAULT_CONFIG_NAME).resolve()


def _load_cfg_with_path(
    config_path: str | None, *, with_credentials: bool = True
) -> tuple[DeployConfig, Path]:
    path = _cfg_path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f'Config not found: {path}. '
            f'Run: vmdeploy config init --config {path}'
        )
    cfg = load(path).expanded_paths()
    if with_credentials:
        apply_credentials(cfg)
    return cfg, path


def _load_cfg(config_path: str | None) -> DeployConfig:
    cfg, _ = _load_cfg_with_path(config_path, with_credentials=False)
    return cfg


def _confirm_destructive(*, yes: bool, purpose: str) -> None:
    if yes:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Destructive operation requires confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print('About to run a destructive operation:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')


def _finish(result: RunResult) -> int:
    """Print the run summary and translate it to an exit status."""
    summary = result.summary()
    if result.error is not None:
        stage = result.failed_stage.value if result.failed_stage else 'run'
        print(f'ERROR [{stage}]: {result.error}', file=sys.stderr)
    elif summary:
        print(summary)
    return result.exit_code


__all__ = [name for name in globals() if not name.startswith('__')]
