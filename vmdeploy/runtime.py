"""Runtime helpers for constructing govc, packer, terraform and SSH invocations.

Credentials travel through per-call environment mappings built from the
explicit :class:`DeployConfig`, never through exported shell state or argv.
"""

from __future__ import annotations

from pathlib import Path

from .config import DeployConfig


def govc_cmd(*args: str) -> list[str]:
    return ['govc', *args]


def govc_env(cfg: DeployConfig) -> dict[str, str]:
    vs = cfg.vsphere
    env = {
        'GOVC_URL': vs.server,
        'GOVC_USERNAME': vs.user,
        'GOVC_PASSWORD': vs.password,
        'GOVC_DATACENTER': vs.datacenter,
        'GOVC_DATASTORE': vs.datastore,
        'GOVC_NETWORK': vs.network,
    }
    if vs.insecure:
        env['GOVC_INSECURE'] = '1'
    return {k: v for k, v in env.items() if v}


def packer_env(cfg: DeployConfig, log_path: Path) -> dict[str, str]:
    return {
        'PACKER_LOG': '1',
        'PACKER_LOG_PATH': str(log_path),
        'PKR_VAR_vsphere_password': cfg.vsphere.password,
    }


def packer_var_args(cfg: DeployConfig) -> list[str]:
    vs = cfg.vsphere
    pairs = [
        ('vsphere_server', vs.server),
        ('vsphere_user', vs.user),
        ('vsphere_datacenter', vs.datacenter),
        ('vsphere_cluster', vs.cluster),
        ('vsphere_datastore', vs.datastore),
        ('vsphere_network', vs.network),
        ('template_name', cfg.template.name),
    ]
    args: list[str] = []
    for key, val in pairs:
        args.extend(['-var', f'{key}={val}'])
    for item in cfg.packer.extra_vars:
        args.extend(['-var', item])
    return args


def terraform_env(cfg: DeployConfig) -> dict[str, str]:
    vs = cfg.vsphere
    env = {
        'TF_IN_AUTOMATION': '1',
        'TF_INPUT': '0',
        'TF_VAR_vsphere_server': vs.server,
        'TF_VAR_vsphere_user': vs.user,
        'TF_VAR_vsphere_password': vs.password,
        'TF_VAR_vsphere_datacenter': vs.datacenter,
        'TF_VAR_vsphere_cluster': vs.cluster,
        'TF_VAR_vsphere_datastore': vs.datastore,
        'TF_VAR_vsphere_network': vs.network,
        'TF_VAR_template_name': cfg.template.name,
    }
    return {k: v for k, v in env.items() if v}


def ssh_base_args(
    ident: str = '',
    *,
    strict_host_key_checking: str = 'accept-new',
    connect_timeout: int | None = None,
    batch_mode: bool = False,
    user_known_hosts_file: str | None = None,
) -> list[str]:
    args: list[str] = []
    if batch_mode:
        args.extend(['-o', 'BatchMode=yes'])
    if connect_timeout is not None:
        args.extend(['-o', f'ConnectTimeout={connect_timeout}'])
    args.extend(['-o', f'StrictHostKeyChecking={strict_host_key_checking}'])
    if user_known_hosts_file:
        args.extend(['-o', f'UserKnownHostsFile={user_known_hosts_file}'])
    if ident:
        args.extend(['-i', ident])
    return args


def ssh_hint(cfg: DeployConfig, address: str) -> str:
    ident = cfg.ssh.identity_file
    prefix = f'ssh -i {ident} ' if ident else 'ssh '
    return f'{prefix}{cfg.ssh.user}@{address}'
