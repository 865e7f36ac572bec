"""Host tool checks for the external programs a deployment shells out to."""

from __future__ import annotations

from .util import which

REQUIRED_CMDS = [
    'govc',
    'packer',
    'terraform',
    'ssh',
    'ping',
]
OPTIONAL_CMDS = ['sops']


def check_commands(*, need_secrets: bool = False) -> tuple[list[str], list[str]]:
    required = list(REQUIRED_CMDS)
    optional = list(OPTIONAL_CMDS)
    if need_secrets:
        required.append('sops')
        optional.remove('sops')
    missing = [c for c in required if which(c) is None]
    missing_opt = [c for c in optional if which(c) is None]
    return missing, missing_opt
