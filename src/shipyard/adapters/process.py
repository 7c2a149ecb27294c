"""Shared subprocess adapter for external command execution."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shipyard.errors import CommandFailedError, CommandTimeoutError, ProcessExecutionError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path


@dataclass(frozen=True)
class ProcessResult:
    """Captured result of a subprocess execution."""

    returncode: int
    stdout: bytes
    stderr: bytes

    def stdout_text(self) -> str:
        """Decode stdout as UTF-8 with replacement."""
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        """Decode stderr as UTF-8 with replacement."""
        return self.stderr.decode("utf-8", errors="replace")


def _normalize_cwd(cwd: str | Path | None) -> str | None:
    if cwd is None:
        return None
    return str(cwd)


def _normalize_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    return dict(env)


async def spawn_exec(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin: int | None = None,
    stdout: int | None = None,
    stderr: int | None = None,
    new_session: bool = False,
) -> asyncio.subprocess.Process:
    """Spawn a subprocess using ``create_subprocess_exec``."""
    return await asyncio.create_subprocess_exec(
        executable,
        *args,
        cwd=_normalize_cwd(cwd),
        env=_normalize_env(env),
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        start_new_session=new_session and os.name != "nt",
    )


async def spawn_shell(
    command: str,
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin: int | None = None,
    stdout: int | None = None,
    stderr: int | None = None,
    new_session: bool = False,
) -> asyncio.subprocess.Process:
    """Spawn a subprocess using ``create_subprocess_shell``.

    With ``new_session`` the child leads its own process group so
    :func:`kill_process_tree` can take down everything it forked.
    """
    return await asyncio.create_subprocess_shell(
        command,
        cwd=_normalize_cwd(cwd),
        env=_normalize_env(env),
        stdin=stdin,
        stdout=stdout,
        stderr=stderr,
        start_new_session=new_session and os.name != "nt",
    )


def kill_process_tree(process: asyncio.subprocess.Process) -> None:
    """Kill a process and, on POSIX, the process group it leads."""
    if process.returncode is not None:
        return
    if os.name != "nt":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
            return
    with contextlib.suppress(ProcessLookupError):
        process.kill()


async def _communicate(
    process: asyncio.subprocess.Process,
    *,
    timeout: float | None = None,
) -> tuple[bytes, bytes]:
    try:
        if timeout is None:
            stdout, stderr = await process.communicate()
        else:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        kill_process_tree(process)
        with contextlib.suppress(ProcessLookupError):
            await process.communicate()
        raise

    return stdout or b"", stderr or b""


async def run_exec_capture(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run an exec subprocess and capture stdout/stderr."""
    process = await spawn_exec(
        executable,
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        new_session=True,
    )
    stdout, stderr = await _communicate(process, timeout=timeout)
    return ProcessResult(
        returncode=process.returncode if process.returncode is not None else 1,
        stdout=stdout,
        stderr=stderr,
    )


def _build_nonzero_error(
    *,
    command: tuple[str, ...],
    result: ProcessResult,
) -> ProcessExecutionError:
    stderr_text = result.stderr_text().strip()
    stdout_text = result.stdout_text().strip()
    detail = stderr_text or stdout_text or "process exited with a non-zero status"
    return CommandFailedError(
        command=command,
        returncode=result.returncode,
        stdout=stdout_text or None,
        stderr=stderr_text or None,
        detail=detail,
    )


async def run_exec_checked(
    executable: str,
    *args: str,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> ProcessResult:
    """Run exec subprocess and raise a structured error when execution fails."""
    command = (executable, *args)
    try:
        result = await run_exec_capture(executable, *args, cwd=cwd, env=env, timeout=timeout)
    except TimeoutError as exc:
        raise CommandTimeoutError(
            command=command, detail="process execution exceeded timeout"
        ) from exc
    except OSError as exc:
        raise ProcessExecutionError(
            code="PROCESS_OS_ERROR", command=command, detail=str(exc)
        ) from exc

    if result.returncode != 0:
        raise _build_nonzero_error(command=command, result=result)

    return result


def spawn_detached(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.Popen[bytes]:
    """Spawn a detached subprocess that outlives the caller's wait."""
    if os.name == "nt":
        return subprocess.Popen(
            list(command),
            cwd=_normalize_cwd(cwd),
            env=_normalize_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            close_fds=True,
        )
    return subprocess.Popen(
        list(command),
        cwd=_normalize_cwd(cwd),
        env=_normalize_env(env),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        close_fds=True,
        start_new_session=True,
    )


__all__ = [
    "ProcessResult",
    "kill_process_tree",
    "run_exec_capture",
    "run_exec_checked",
    "spawn_detached",
    "spawn_exec",
    "spawn_shell",
]
