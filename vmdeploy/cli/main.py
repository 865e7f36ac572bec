"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import json
import os
import sys

import scriptconfig as scfg
from loguru import logger

from ..coordinator import RunCoordinator
from ..inventory import load_inventory
from ..plan import inventory_path
from ._common import (
    _BaseCommand,
    _cfg_path,
    _confirm_destructive,
    _finish,
    _load_cfg,
    _load_cfg_with_path,
    log,
)
from .config import ConfigModalCLI


class DeployCLI(_BaseCommand):
    """Validate, ensure the template, apply the plan, then verify reachability."""

    no_verify = scfg.Value(
        False, isflag=True, help='Skip post-deploy reachability verification.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, _ = _load_cfg_with_path(args.config)
        if args.no_verify:
            cfg.verify.enabled = False
        return _finish(RunCoordinator(cfg).deploy())


class ValidateCLI(_BaseCommand):
    """Check settings, tools, vCenter connectivity, template and Terraform config."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, _ = _load_cfg_with_path(args.config)
        return _finish(RunCoordinator(cfg).validate())


class TemplateCLI(_BaseCommand):
    """Build the VM template with Packer."""

    if_missing = scfg.Value(
        False,
        isflag=True,
        help='Only build when the template is not already present.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, _ = _load_cfg_with_path(args.config)
        return _finish(RunCoordinator(cfg).template(if_missing=bool(args.if_missing)))


class DestroyCLI(_BaseCommand):
    """Destroy all Terraform-managed infrastructure."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, _ = _load_cfg_with_path(args.config)
        _confirm_destructive(
            yes=bool(args.yes),
            purpose=f'terraform destroy in {cfg.resolve(cfg.terraform.directory)}',
        )
        return _finish(RunCoordinator(cfg).destroy())


class VerifyCLI(_BaseCommand):
    """Re-run reachability verification against the saved inventory."""

    settle_s = scfg.Value(
        None, type=float, help='Override the settling delay before the second pass.'
    )
    deadline_s = scfg.Value(
        None, type=float, help='Override the overall verification deadline.'
    )
    as_json = scfg.Value(
        False,
        isflag=True,
        alias=['json'],
        help='Print the outcome as JSON instead of text.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, _ = _load_cfg_with_path(args.config)
        if args.settle_s is not None:
            cfg.verify.settle_s = float(args.settle_s)
        if args.deadline_s is not None:
            cfg.verify.deadline_s = float(args.deadline_s)
        cfg.verify.enabled = True
        result = RunCoordinator(cfg).verify()
        if args.as_json and result.outcome is not None:
            print(json.dumps(result.outcome.as_dict(), indent=2))
            return result.exit_code
        return _finish(result)


class InventoryCLI(_BaseCommand):
    """Show the VM inventory recorded by the last apply."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        path = inventory_path(cfg)
        snap = load_inventory(path)
        print('Inventory')
        if not snap.vms:
            print('  (none)')
        for vm in snap.vms:
            print(
                f'  - {vm.name} | id={vm.stable_id or "(unknown)"} '
                f'| address={vm.declared_address or "(none)"}'
            )
        print('')
        print(f'Template: {snap.template or "(unknown)"}')
        print(f'Created: {snap.created_at or "(unknown)"}')
        print(f'Inventory file: {path}')
        return 0


class DeployModalCLI(scfg.ModalCLI):
    """Template build, Terraform deployment, and reachability checks for vSphere VMs."""

    config = ConfigModalCLI
    deploy = DeployCLI
    validate = ValidateCLI
    template = TemplateCLI
    destroy = DestroyCLI
    verify = VerifyCLI
    inventory = InventoryCLI


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        if config_value is not None or _cfg_path(None).exists():
            verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = DeployModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled vmdeploy error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


_LEGACY_FLAGS = {
    '--validate': 'validate',
    '--template': 'template',
    '--destroy': 'destroy',
}


def _normalize_argv(argv: list[str]) -> list[str]:
    """Map the old deploy-script flags and bare invocations onto subcommands."""
    argv = list(argv)
    if not argv:
        return ['deploy']
    for flag, command in _LEGACY_FLAGS.items():
        if flag in argv:
            rest = [a for a in argv if a != flag]
            return [command, *rest]
    if argv[0] == 'init':
        return ['config', 'init', *argv[1:]]
    if argv[0] == 'inv':
        return ['inventory', *argv[1:]]
    if argv[0].startswith('-') and argv[0] not in {'-h', '--help'}:
        return ['deploy', *argv]
    return argv


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
