from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import DeployConfig, dump_toml, save
from ..secrets import apply_credentials
from ._common import _BaseCommand, _cfg_path, _load_cfg_with_path


class InitCLI(_BaseCommand):
    """Write a default deployment config file."""

    force = scfg.Value(
        False,
        isflag=True,
        help='Overwrite the config file if it already exists.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        path.parent.mkdir(parents=True, exist_ok=True)
        cfg = DeployConfig()
        # Seed from the environment so an existing shell setup carries over.
        apply_credentials(cfg)
        save(path, cfg)
        print(f'Wrote config: {path}')
        missing = cfg.missing_vsphere_fields()
        if missing:
            print('Still unset: ' + ', '.join(missing))
        return 0


class ConfigShowCLI(_BaseCommand):
    """Show the resolved config (credentials and environment applied)."""

    secrets = scfg.Value(
        False,
        isflag=True,
        help='Include the vSphere password in the output.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg, path = _load_cfg_with_path(args.config)
        print(f'# Config: {path}')
        print(dump_toml(cfg, include_secrets=bool(args.secrets)), end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file management."""

    init = InitCLI
    show = ConfigShowCLI
