"""Shared utility helpers for subprocess execution, paths, and command formatting."""

from __future__ import annotations

import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from loguru import logger

log = logger

TIMEOUT_CODE = 124


@dataclass(frozen=True)
class CmdResult:
    code: int
    stdout: str
    stderr: str
    timed_out: bool = False


class CmdError(RuntimeError):
    def __init__(self, cmd: Sequence[str] | str, result: CmdResult):
        self.cmd = cmd
        self.result = result
        super().__init__(
            f'Command failed (code={result.code}): {cmd}\n{result.stderr}'.strip()
        )


def shell_join(cmd: Sequence[str]) -> str:
    return ' '.join(shlex.quote(c) for c in cmd)


def run_cmd(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture: bool = True,
    text: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[Path | str] = None,
    timeout: Optional[float] = None,
) -> CmdResult:
    """Run a command, never blocking past ``timeout`` seconds.

    ``env`` entries are layered on top of the current process environment.
    A timeout is reported as ``code=124`` with ``timed_out=True``.
    """
    cmd = list(cmd)
    log.opt(depth=1).debug('RUN: {}', shell_join(cmd))
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        p = subprocess.run(
            cmd,
            input=input_text if input_text is not None else None,
            capture_output=capture,
            text=text,
            env=full_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as ex:
        res = CmdResult(
            TIMEOUT_CODE,
            _as_text(ex.stdout),
            f'timed out after {timeout}s',
            timed_out=True,
        )
        log.opt(depth=1).warning(
            'Command timed out after {}s cmd={}', timeout, shell_join(cmd)
        )
        if check:
            raise CmdError(cmd, res) from ex
        return res
    except FileNotFoundError as ex:
        res = CmdResult(127, '', f'command not found: {cmd[0]}')
        log.opt(depth=1).error('Command not found: {}', cmd[0])
        if check:
            raise CmdError(cmd, res) from ex
        return res
    res = CmdResult(p.returncode, p.stdout or '', p.stderr or '')
    if check and p.returncode != 0:
        log.opt(depth=1).error(
            'Command failed code={} cmd={} stderr={} stdout={}',
            p.returncode,
            shell_join(cmd),
            res.stderr.strip(),
            res.stdout.strip(),
        )
        raise CmdError(cmd, res)
    if p.returncode == 0:
        log.opt(depth=1).debug('Command ok code=0 cmd={}', shell_join(cmd))
    return res


def _as_text(data: bytes | str | None) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data


def which(cmd: str) -> Optional[str]:
    from shutil import which as _which

    return _which(cmd)


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def expand(path: str) -> str:
    return os.path.expandvars(os.path.expanduser(path))


def rotate_file(path: Path, *, stamp: str | None = None) -> Path | None:
    """Move an existing file aside with a timestamp suffix.

    Returns the new location, or None when there was nothing to rotate.
    An existing rotated file with the same stamp is never overwritten.
    """
    path = Path(path)
    if not path.exists():
        return None
    stamp = stamp or time.strftime('%Y%m%d-%H%M%S')
    dest = path.with_name(f'{path.name}.{stamp}')
    idx = 1
    while dest.exists():
        dest = path.with_name(f'{path.name}.{stamp}.{idx}')
        idx += 1
    path.rename(dest)
    log.debug('Rotated {} -> {}', path, dest)
    return dest


class Deadline:
    """Overall run deadline combined with an explicit cancellation signal."""

    def __init__(self, seconds: float | None = None, *, clock=time.monotonic):
        self._clock = clock
        self._event = threading.Event()
        self.expires_at = None if seconds is None else clock() + float(seconds)

    def cancel(self) -> None:
        self._event.set()

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        rem = self.remaining()
        return rem is not None and rem <= 0

    def bound(self, timeout: float) -> float:
        """Clip a per-call timeout so it never outlives the deadline."""
        rem = self.remaining()
        if rem is None:
            return timeout
        return max(0.0, min(timeout, rem))

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True when cut short by cancellation."""
        if self.cancelled:
            return True
        fired = self._event.wait(self.bound(seconds))
        return fired or self.cancelled
