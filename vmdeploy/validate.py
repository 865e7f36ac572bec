"""Precondition checks run before any deployment stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlparse

import ubelt as ub
from loguru import logger

from . import plan
from .config import DeployConfig
from .errors import PreconditionFailure, ProbeTimeout, SourceUnavailable
from .govc import GovcClient
from .host import check_commands
from .probe import icmp_probe, tcp_probe
from .report import status_line

log = logger

VCENTER_PORT = 443


@dataclass
class ValidationReport:
    lines: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    template_present: bool | None = None

    def add(self, ok: bool | None, label: str, detail: str = '') -> None:
        line = status_line(ok, label, detail)
        self.lines.append(line)
        if ok is False:
            log.error(line)
        else:
            log.info(line)

    def render(self) -> str:
        return '\n'.join(self.lines)


def server_host(server: str) -> str:
    text = (server or '').strip()
    if '://' not in text:
        text = 'https://' + text
    return urlparse(text).hostname or ''


def check_settings(cfg: DeployConfig, report: ValidationReport) -> None:
    missing = cfg.missing_vsphere_fields()
    if missing:
        for name in missing:
            report.add(False, name, 'not set')
        raise PreconditionFailure('Some required settings are missing', missing)
    report.add(True, 'vSphere settings', 'all required values set')


def check_tools(cfg: DeployConfig, report: ValidationReport) -> None:
    missing, missing_opt = check_commands(need_secrets=bool(cfg.paths.secrets_file))
    if missing_opt:
        report.add(None, 'Optional tools missing', ', '.join(missing_opt))
    if missing:
        report.add(False, 'Required tools', 'missing ' + ', '.join(missing))
        raise PreconditionFailure('Required host commands are missing', missing)
    report.add(True, 'Required tools', 'present')


def check_network(cfg: DeployConfig, client: GovcClient, report: ValidationReport) -> None:
    host = server_host(cfg.vsphere.server)
    try:
        pinged = icmp_probe(host, timeout=5)
    except ProbeTimeout:
        pinged = False
    if pinged:
        report.add(True, 'Ping to vCenter server', host)
    else:
        report.add(None, 'Ping to vCenter server', f'no reply from {host}; trying TCP')
        try:
            opened = tcp_probe(host, VCENTER_PORT, timeout=5)
        except ProbeTimeout:
            opened = False
        if not opened:
            report.add(False, f'TCP {host}:{VCENTER_PORT}', 'unreachable')
            raise PreconditionFailure(
                f'Cannot reach vCenter server {host}. Please check your network configuration.'
            )
        report.add(True, f'TCP {host}:{VCENTER_PORT}', 'open')

    timer = ub.Timer().tic()
    try:
        about = client.about(timeout=30)
    except SourceUnavailable as ex:
        report.add(False, 'vCenter API', ex.detail)
        raise PreconditionFailure(
            'Cannot connect to vCenter using govc. Please check your credentials.'
        ) from ex
    elapsed = timer.toc()
    report.add(
        True,
        'vCenter API',
        f'connected in {elapsed:.1f}s (version {about["version"] or "?"}, build {about["build"] or "?"})',
    )


def check_template(
    cfg: DeployConfig,
    client: GovcClient,
    report: ValidationReport,
    *,
    required: bool,
) -> None:
    name = cfg.template.name
    try:
        present = client.exists(name, timeout=cfg.template.check_timeout_s)
    except SourceUnavailable as ex:
        present = False
        log.warning('Template lookup failed: {}', ex.detail)
    report.template_present = present
    if present:
        report.add(True, 'Template', name)
        return
    alternatives: list[str] = []
    try:
        alternatives = client.list_templates(timeout=cfg.template.check_timeout_s)
    except SourceUnavailable as ex:
        log.debug('Template listing unavailable: {}', ex.detail)
    detail = f'{name} not found'
    if alternatives:
        detail += ' (available: ' + ', '.join(alternatives) + ')'
    if required:
        report.add(False, 'Template', detail)
        raise PreconditionFailure(f"Template '{name}' not found", alternatives)
    report.add(None, 'Template', detail + '; it will be built')


def run_preconditions(
    cfg: DeployConfig,
    client: GovcClient,
    *,
    require_template: bool = False,
    check_terraform: bool = True,
) -> ValidationReport:
    """Run every precondition check in order, failing fast."""
    report = ValidationReport()
    check_settings(cfg, report)
    check_tools(cfg, report)
    check_network(cfg, client, report)
    check_template(cfg, client, report, required=require_template)
    if check_terraform:
        report.warnings.extend(plan.validate_config(cfg))
        report.add(True, 'Terraform configuration', 'valid')
    return report
