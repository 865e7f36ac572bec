"""Run coordinator: stage sequencing, run log ownership, and exit status.

States::

    init -> validating -> template_check -> [template_build] -> planning
         -> verifying -> done | aborted

Validating, template_build and planning are hard gates: a
:class:`DeployError` there moves the run to ``aborted``. Verifying only
reports; unreachable VMs never change the exit status.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from . import plan
from .config import DeployConfig
from .errors import DeployError
from .govc import GovcClient
from .inventory import InventorySnapshot, load_inventory
from .report import render_outcome
from .results import RunOutcome
from .template import (
    TemplateResult,
    build_template,
    ensure_template,
    template_exists,
)
from .util import Deadline, ensure_dir
from .validate import ValidationReport, run_preconditions
from .verify import ReachabilityVerifier

log = logger

EXIT_OK = 0
EXIT_ABORTED = 1


def _no_stage(record) -> None:
    pass


class Stage(str, Enum):
    INIT = 'init'
    VALIDATING = 'validating'
    TEMPLATE_CHECK = 'template_check'
    TEMPLATE_BUILD = 'template_build'
    PLANNING = 'planning'
    DESTROYING = 'destroying'
    VERIFYING = 'verifying'
    DONE = 'done'
    ABORTED = 'aborted'


@dataclass
class RunResult:
    action: str
    stage: Stage = Stage.INIT
    transitions: list[Stage] = field(default_factory=lambda: [Stage.INIT])
    error: DeployError | None = None
    failed_stage: Stage | None = None
    validation: ValidationReport | None = None
    template: TemplateResult | None = None
    snapshot: InventorySnapshot | None = None
    outcome: RunOutcome | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_ABORTED if self.stage is Stage.ABORTED else EXIT_OK

    def summary(self) -> str:
        lines: list[str] = []
        if self.stage is Stage.ABORTED:
            lines.append(
                f'❌ {self.action} aborted at stage {self.failed_stage.value}: '
                f'{type(self.error).__name__}: {self.error}'
            )
            return '\n'.join(lines)
        if self.validation is not None and self.action == 'validate':
            lines.append(self.validation.render())
            lines.append('')
            lines.append('✅ All validations passed successfully!')
        if self.template is not None:
            if self.template.already_existed:
                lines.append('✅ Template already present')
            else:
                lines.append(f'✅ Template built (log: {self.template.log_path})')
        if self.snapshot is not None and self.action == 'deploy':
            lines.append(f'✅ Terraform applied: {len(self.snapshot.vms)} VM(s)')
        if self.outcome is not None:
            lines.append('')
            lines.append(render_outcome(self.outcome))
        if self.action == 'destroy':
            lines.append('✅ Infrastructure destroyed')
        if self.action == 'deploy':
            lines.append('')
            if self.outcome is not None and self.outcome.unreachable_names:
                lines.append(
                    '⚠️  Deployment completed with unreachable VMs (see warnings above).'
                )
            else:
                lines.append('✅ Deployment completed successfully!')
        return '\n'.join(lines).strip()


class RunCoordinator:
    def __init__(
        self,
        cfg: DeployConfig,
        *,
        client: GovcClient | None = None,
        deadline: Deadline | None = None,
        verifier_factory: Callable[..., ReachabilityVerifier] = ReachabilityVerifier,
    ):
        self.cfg = cfg
        self.client = client or GovcClient(cfg)
        self.deadline = deadline
        self.verifier_factory = verifier_factory
        self.result = RunResult(action='')

    # -- run log --

    def _stamp_stage(self, record) -> None:
        # Patchers run at the log call, before the record reaches the queue.
        record['extra'].setdefault('stage', self.result.stage.value)

    def _log_format(self, record) -> str:
        record['extra'].setdefault('stage', '-')
        return (
            '{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[stage]: <14} | '
            '{name}:{function}:{line} - {message}\n{exception}'
        )

    @contextmanager
    def _run_log(self, action: str):
        path = self.cfg.resolve(self.cfg.paths.log_file)
        ensure_dir(path.parent)
        logger.configure(patcher=self._stamp_stage)
        sink_id = logger.add(
            str(path),
            level='DEBUG',
            mode='a',
            enqueue=True,
            encoding='utf-8',
            format=self._log_format,
        )
        log.info(
            '=== {} started at {} ===', action, time.strftime('%Y-%m-%d %H:%M:%S')
        )
        try:
            yield path
        finally:
            log.info(
                '=== {} finished at {} (stage={}, exit={}) ===',
                action,
                time.strftime('%Y-%m-%d %H:%M:%S'),
                self.result.stage.value,
                self.result.exit_code,
            )
            logger.remove(sink_id)
            logger.configure(patcher=_no_stage)

    # -- state machine --

    def _enter(self, stage: Stage) -> None:
        log.debug('Stage {} -> {}', self.result.stage.value, stage.value)
        self.result.stage = stage
        self.result.transitions.append(stage)

    def _execute(self, action: str, body: Callable[[], None]) -> RunResult:
        self.result = RunResult(action=action)
        with self._run_log(action):
            try:
                body()
            except DeployError as ex:
                self.result.error = ex
                self.result.failed_stage = self.result.stage
                log.error(
                    '{} in stage {}: {}',
                    type(ex).__name__,
                    self.result.stage.value,
                    ex,
                )
                self._enter(Stage.ABORTED)
            except Exception:
                log.exception('Unexpected failure in stage {}', self.result.stage.value)
                self.result.failed_stage = self.result.stage
                self._enter(Stage.ABORTED)
                raise
            else:
                self._enter(Stage.DONE)
            summary = self.result.summary()
            if summary:
                log.info('Summary:\n{}', summary)
        return self.result

    def _verify(self, snapshot: InventorySnapshot) -> None:
        if not self.cfg.verify.enabled:
            log.info('Reachability verification disabled; skipping')
            return
        if self.result.stage is not Stage.VERIFYING:
            self._enter(Stage.VERIFYING)
        deadline = self.deadline or Deadline(self.cfg.verify.deadline_s)
        verifier = self.verifier_factory(self.cfg, self.client, deadline=deadline)
        self.result.outcome = verifier.verify(snapshot)

    # -- entry points --

    def deploy(self) -> RunResult:
        def body() -> None:
            self._enter(Stage.VALIDATING)
            self.result.validation = run_preconditions(
                self.cfg, self.client, require_template=False
            )
            self._enter(Stage.TEMPLATE_CHECK)
            if template_exists(self.cfg, self.client):
                log.info('Template {} found', self.cfg.template.name)
                self.result.template = TemplateResult(already_existed=True)
            else:
                self._enter(Stage.TEMPLATE_BUILD)
                log_path = build_template(self.cfg)
                self.result.template = TemplateResult(
                    already_existed=False, log_path=str(log_path)
                )
            self._enter(Stage.PLANNING)
            self.result.snapshot = plan.apply(self.cfg)
            self._verify(self.result.snapshot)

        return self._execute('deploy', body)

    def validate(self) -> RunResult:
        def body() -> None:
            self._enter(Stage.VALIDATING)
            self.result.validation = run_preconditions(
                self.cfg, self.client, require_template=True
            )

        return self._execute('validate', body)

    def template(self, *, if_missing: bool = False) -> RunResult:
        def body() -> None:
            if if_missing:
                self._enter(Stage.TEMPLATE_CHECK)
                self.result.template = ensure_template(self.cfg, self.client)
                return
            self._enter(Stage.TEMPLATE_BUILD)
            log_path = build_template(self.cfg)
            self.result.template = TemplateResult(
                already_existed=False, log_path=str(log_path)
            )

        return self._execute('template', body)

    def destroy(self) -> RunResult:
        def body() -> None:
            self._enter(Stage.DESTROYING)
            plan.destroy(self.cfg)

        return self._execute('destroy', body)

    def verify(self) -> RunResult:
        def body() -> None:
            self._enter(Stage.VERIFYING)
            snap = load_inventory(plan.inventory_path(self.cfg))
            self.result.snapshot = snap
            self._verify(snap)

        return self._execute('verify', body)
