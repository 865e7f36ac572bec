"""Deployment configuration: dataclass tree, TOML load/save, environment overrides."""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Mapping

from .util import expand

DEFAULT_CONFIG_NAME = 'vmdeploy.toml'

SECTIONS = (
    'vsphere',
    'template',
    'packer',
    'terraform',
    'verify',
    'ssh',
    'paths',
)

# Variables historically exported by the shell environment file.
ENV_OVERRIDES = {
    'VSPHERE_SERVER': ('vsphere', 'server'),
    'VSPHERE_USER': ('vsphere', 'user'),
    'VSPHERE_PASSWORD': ('vsphere', 'password'),
    'VSPHERE_DATACENTER': ('vsphere', 'datacenter'),
    'VSPHERE_CLUSTER': ('vsphere', 'cluster'),
    'VSPHERE_DATASTORE': ('vsphere', 'datastore'),
    'VSPHERE_NETWORK': ('vsphere', 'network'),
    'TEMPLATE_NAME': ('template', 'name'),
    'SSH_KEY_NAME': ('ssh', 'key_name'),
}


@dataclass
class VSphereConfig:
    server: str = ''
    user: str = ''
    password: str = ''
    datacenter: str = ''
    cluster: str = ''
    datastore: str = ''
    network: str = ''
    insecure: bool = True


REQUIRED_VSPHERE_FIELDS = (
    'server',
    'user',
    'password',
    'datacenter',
    'cluster',
    'datastore',
    'network',
)


@dataclass
class TemplateConfig:
    name: str = 'ubuntu-template'
    check_timeout_s: int = 30


@dataclass
class PackerConfig:
    directory: str = 'packer'
    template_file: str = 'ubuntu.pkr.hcl'
    log_file: str = 'packer/packer.log'
    build_timeout_s: int = 7200
    extra_vars: list[str] = field(default_factory=list)


@dataclass
class TerraformConfig:
    directory: str = 'terraform'
    plan_file: str = 'tfplan'
    inventory_output: str = 'vms'
    timeout_s: int = 3600


@dataclass
class VerifyConfig:
    enabled: bool = True
    probe_timeout_s: float = 3.0
    tcp_port: int = 22
    source_timeout_s: int = 10
    settle_s: float = 30.0
    max_workers: int = 8
    deadline_s: float = 900.0
    guest_query: bool = True


@dataclass
class SSHConfig:
    user: str = 'ubuntu'
    key_dir: str = '~/.ssh'
    key_name: str = ''
    connect_timeout_s: int = 3

    @property
    def identity_file(self) -> str:
        if not self.key_name:
            return ''
        return str(Path(expand(self.key_dir)) / self.key_name)


@dataclass
class PathsConfig:
    project_root: str = ''
    log_file: str = 'deployment.log'
    inventory_file: str = '.vmdeploy/inventory.toml'
    secrets_file: str = ''
    sops_age_key_file: str = '~/.sops/default_key'


@dataclass
class DeployConfig:
    vsphere: VSphereConfig = field(default_factory=VSphereConfig)
    template: TemplateConfig = field(default_factory=TemplateConfig)
    packer: PackerConfig = field(default_factory=PackerConfig)
    terraform: TerraformConfig = field(default_factory=TerraformConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'DeployConfig':
        self.paths.project_root = expand(self.paths.project_root or '.')
        self.paths.sops_age_key_file = expand(self.paths.sops_age_key_file)
        self.ssh.key_dir = expand(self.ssh.key_dir)
        return self

    def resolve(self, raw: str) -> Path:
        """Resolve a possibly relative config path against the project root."""
        p = Path(expand(raw))
        if p.is_absolute():
            return p
        return Path(expand(self.paths.project_root or '.')) / p

    def missing_vsphere_fields(self) -> list[str]:
        return [
            f'VSPHERE_{name.upper()}'
            for name in REQUIRED_VSPHERE_FIELDS
            if not str(getattr(self.vsphere, name) or '').strip()
        ]

    def apply_overrides(self, values: Mapping[str, str]) -> list[str]:
        """Apply ``VSPHERE_*`` style overrides; return the keys that were used."""
        used = []
        for key, (section, attr) in ENV_OVERRIDES.items():
            val = values.get(key)
            if val is None or str(val).strip() == '':
                continue
            setattr(getattr(self, section), attr, str(val))
            used.append(key)
        return used


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def _emit_toml_kv(lines: list[str], key: str, val: object) -> None:
    if isinstance(val, bool):
        lines.append(f'{key} = {"true" if val else "false"}')
    elif isinstance(val, (int, float)):
        lines.append(f'{key} = {val}')
    elif isinstance(val, list):
        parts = [f'"{_toml_escape(str(item))}"' for item in val]
        lines.append(f'{key} = [{", ".join(parts)}]')
    else:
        lines.append(f'{key} = "{_toml_escape(str(val))}"')


def dump_toml(cfg: DeployConfig, *, include_secrets: bool = False) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    if d.get('verbosity', 1) != 1:
        lines.append(f'verbosity = {d["verbosity"]}')
        lines.append('')
    for section in SECTIONS:
        body = d[section]
        lines.append(f'[{section}]')
        for k, v in body.items():
            if section == 'vsphere' and k == 'password' and not include_secrets:
                continue
            _emit_toml_kv(lines, k, v)
        lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def from_dict(raw: dict) -> DeployConfig:
    cfg = DeployConfig()
    for section in SECTIONS:
        body = raw.get(section, None)
        if isinstance(body, dict):
            obj = getattr(cfg, section)
            for k, v in body.items():
                if k in obj.__dataclass_fields__:
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = int(raw['verbosity'])
    return cfg


def load(path: Path) -> DeployConfig:
    raw = tomllib.loads(path.read_text(encoding='utf-8'))
    cfg = from_dict(raw)
    if not cfg.paths.project_root:
        cfg.paths.project_root = str(path.resolve().parent)
    return cfg


def save(path: Path, cfg: DeployConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
