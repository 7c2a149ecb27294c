"""Host process sandbox: supervised shell commands for stage executors.

A sandbox runs one shell command at a time with a working directory and a
merged environment. It enforces an overall timeout and an optional hang
window (silence on the output streams), aborts immediately when stderr shows
an expired credential, and records activity so a status reader can tell
whether an executor is busy or idle.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

from shipyard.adapters.process import kill_process_tree, spawn_detached, spawn_shell
from shipyard.errors import (
    CommandAuthError,
    CommandFailedError,
    CommandTimeoutError,
    ProcessExecutionError,
)
from shipyard.limits import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    KILL_GRACE_SECONDS,
    MAX_COMMAND_TIMEOUT_SECONDS,
    MAX_OUTPUT_TAIL_CHARS,
    SANDBOX_READ_CHUNK_BYTES,
    SANDBOX_WATCH_INTERVAL_SECONDS,
)
from shipyard.utils import truncate_tail, utc_now

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence
    from datetime import datetime
    from pathlib import Path

log = logging.getLogger(__name__)

StreamName: TypeAlias = Literal["stdout", "stderr", "update"]
TextCallback: TypeAlias = "Callable[[str], None]"
UpdateCallback: TypeAlias = "Callable[[dict[str, Any]], None]"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """One piece of live output, delivered to sandbox listeners."""

    stream: StreamName
    text: str
    command: str
    payload: dict[str, Any] | None = None


OutputListener: TypeAlias = "Callable[[OutputChunk], None]"


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int = 0
    background: bool = False
    pid: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True, slots=True)
class SandboxActivity:
    last_activity_at: datetime | None
    idle_seconds: float | None
    current_command: str | None
    is_running: bool


@dataclass(slots=True)
class _Capture:
    command: str
    started: float
    last_output: float
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    stderr_tail: str = ""
    line_buffer: str = ""
    auth_match: str | None = None


def _matches_any(text: str, patterns: Iterable[str]) -> str | None:
    lowered = text.lower()
    for pattern in patterns:
        if pattern and pattern.lower() in lowered:
            return pattern
    return None


def _safe_call(callback: Callable[[Any], None], value: object) -> None:
    try:
        callback(value)
    except Exception:
        log.exception("Sandbox output callback failed")


def build_secrets(
    pass_env: Sequence[str],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Collect forwarded environment variables that are actually set."""
    source = os.environ if environ is None else environ
    return {name: source[name] for name in pass_env if source.get(name)}


class HostSandbox:
    """Runs commands directly on the host under timeout and hang supervision."""

    def __init__(
        self,
        *,
        cwd: Path,
        env: Mapping[str, str],
        agent: str = "default",
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.cwd = cwd
        self.env = dict(env)
        self.agent = agent
        self.default_timeout = default_timeout
        self._listeners: list[OutputListener] = []
        self._process: asyncio.subprocess.Process | None = None
        self._current_command: str | None = None
        self._last_activity_at: datetime | None = None
        self._last_activity_mono: float | None = None

    def add_listener(self, listener: OutputListener) -> Callable[[], None]:
        """Register a live-output listener; returns a function that removes it."""
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def activity(self) -> SandboxActivity:
        idle: float | None = None
        if self._last_activity_mono is not None:
            idle = max(0.0, time.monotonic() - self._last_activity_mono)
        return SandboxActivity(
            last_activity_at=self._last_activity_at,
            idle_seconds=idle,
            current_command=self._current_command,
            is_running=self._process is not None and self._process.returncode is None,
        )

    def kill(self) -> None:
        """Kill the command currently running in this sandbox, if any."""
        if self._process is not None:
            kill_process_tree(self._process)

    def _touch(self) -> None:
        self._last_activity_at = utc_now()
        self._last_activity_mono = time.monotonic()

    def _emit(self, chunk: OutputChunk) -> None:
        for listener in list(self._listeners):
            try:
                listener(chunk)
            except Exception:
                log.exception("Sandbox output listener failed")

    async def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        hang_timeout: float | None = None,
        background: bool = False,
        check: bool = False,
        structured: bool = False,
        cwd: Path | None = None,
        on_stdout: TextCallback | None = None,
        on_stderr: TextCallback | None = None,
        on_update: UpdateCallback | None = None,
        auth_failure_patterns: Sequence[str] = (),
        hang_reset_on_stderr: bool = True,
    ) -> CommandResult:
        """Run *command* through the shell and return its captured result.

        Raises:
            CommandTimeoutError: overall timeout or hang window exceeded.
            CommandAuthError: stderr matched one of *auth_failure_patterns*.
            CommandFailedError: non-zero exit and ``check`` was requested.
        """
        workdir = cwd or self.cwd
        if background:
            return self._run_background(command, workdir)

        overall = min(timeout or self.default_timeout, MAX_COMMAND_TIMEOUT_SECONDS)
        log.debug("[%s] running: %s", self.agent, command)
        try:
            process = await spawn_shell(
                command,
                cwd=workdir,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                new_session=True,
            )
        except OSError as exc:
            raise ProcessExecutionError(
                code="PROCESS_OS_ERROR", command=(command,), detail=str(exc)
            ) from exc

        now = time.monotonic()
        capture = _Capture(command=command, started=now, last_output=now)
        self._process = process
        self._current_command = command
        self._touch()

        pumps = [
            asyncio.create_task(
                self._pump(
                    process,
                    process.stdout,
                    "stdout",
                    capture,
                    callback=on_stdout,
                    on_update=on_update if structured else None,
                    resets_hang=True,
                    auth_patterns=(),
                )
            ),
            asyncio.create_task(
                self._pump(
                    process,
                    process.stderr,
                    "stderr",
                    capture,
                    callback=on_stderr,
                    on_update=None,
                    resets_hang=hang_reset_on_stderr,
                    auth_patterns=auth_failure_patterns,
                )
            ),
        ]
        reason: str | None = None
        try:
            reason = await self._watch(process, capture, overall=overall, hang=hang_timeout)
        finally:
            # A clean exit leaves anything the command deliberately backgrounded alone.
            if reason is not None or process.returncode is None:
                kill_process_tree(process)
            _done, pending = await asyncio.wait(pumps, timeout=KILL_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            with contextlib.suppress(ProcessLookupError):
                await process.wait()
            self._process = None
            self._current_command = None
            self._touch()

        stdout = "".join(capture.stdout)
        stderr = "".join(capture.stderr)
        duration_ms = int((time.monotonic() - capture.started) * 1000)
        returncode = process.returncode if process.returncode is not None else -1

        if reason == "auth":
            log.warning("[%s] auth failure signature matched, aborted: %s", self.agent, command)
            raise CommandAuthError(
                command=(command,),
                returncode=returncode,
                stdout=truncate_tail(stdout, MAX_OUTPUT_TAIL_CHARS) or None,
                stderr=truncate_tail(stderr, MAX_OUTPUT_TAIL_CHARS) or None,
                detail=f"authentication failure detected: {capture.auth_match}",
            )
        if reason == "timeout":
            log.warning("[%s] command timed out after %.1fs: %s", self.agent, overall, command)
            raise CommandTimeoutError(
                command=(command,),
                stdout=truncate_tail(stdout, MAX_OUTPUT_TAIL_CHARS) or None,
                stderr=truncate_tail(stderr, MAX_OUTPUT_TAIL_CHARS) or None,
                detail=f"process execution exceeded timeout of {overall:g}s",
            )
        if reason == "hang":
            log.warning(
                "[%s] command silent for %.1fs, killed: %s", self.agent, hang_timeout, command
            )
            raise CommandTimeoutError(
                code="PROCESS_HANG_TIMEOUT",
                command=(command,),
                stdout=truncate_tail(stdout, MAX_OUTPUT_TAIL_CHARS) or None,
                stderr=truncate_tail(stderr, MAX_OUTPUT_TAIL_CHARS) or None,
                detail=f"no output for {hang_timeout:g}s",
            )

        result = CommandResult(
            command=command,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            pid=process.pid,
        )
        if check and not result.ok:
            raise CommandFailedError(
                command=(command,),
                returncode=returncode,
                stdout=truncate_tail(stdout, MAX_OUTPUT_TAIL_CHARS).strip() or None,
                stderr=truncate_tail(stderr, MAX_OUTPUT_TAIL_CHARS).strip() or None,
            )
        return result

    def _run_background(self, command: str, workdir: Path) -> CommandResult:
        try:
            child = spawn_detached(["/bin/sh", "-c", command], cwd=workdir, env=self.env)
        except OSError as exc:
            raise ProcessExecutionError(
                code="PROCESS_OS_ERROR", command=(command,), detail=str(exc)
            ) from exc
        self._touch()
        log.info("[%s] background process %s started: %s", self.agent, child.pid, command)
        return CommandResult(
            command=command,
            exit_code=0,
            stdout=f"Background process started: {command}",
            stderr="",
            background=True,
            pid=child.pid,
        )

    async def _watch(
        self,
        process: asyncio.subprocess.Process,
        capture: _Capture,
        *,
        overall: float,
        hang: float | None,
    ) -> str | None:
        waiter = asyncio.ensure_future(process.wait())
        try:
            while True:
                done, _pending = await asyncio.wait(
                    {waiter}, timeout=SANDBOX_WATCH_INTERVAL_SECONDS
                )
                if capture.auth_match is not None:
                    return "auth"
                if waiter in done:
                    return None
                now = time.monotonic()
                if now - capture.started >= overall:
                    return "timeout"
                if hang and now - capture.last_output >= hang:
                    return "hang"
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        stream: asyncio.StreamReader | None,
        name: Literal["stdout", "stderr"],
        capture: _Capture,
        *,
        callback: TextCallback | None,
        on_update: UpdateCallback | None,
        resets_hang: bool,
        auth_patterns: Sequence[str],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(SANDBOX_READ_CHUNK_BYTES)
            if not data:
                break
            text = decoder.decode(data)
            if not text:
                continue
            if resets_hang:
                capture.last_output = time.monotonic()
            self._touch()
            (capture.stdout if name == "stdout" else capture.stderr).append(text)
            if callback is not None:
                _safe_call(callback, text)
            self._emit(OutputChunk(stream=name, text=text, command=capture.command))

            if name == "stderr" and auth_patterns and capture.auth_match is None:
                capture.stderr_tail = truncate_tail(capture.stderr_tail + text, 2048)
                matched = _matches_any(capture.stderr_tail, auth_patterns)
                if matched is not None:
                    capture.auth_match = matched
                    kill_process_tree(process)
            if on_update is not None:
                self._emit_updates(capture, text, on_update)

    def _emit_updates(self, capture: _Capture, text: str, on_update: UpdateCallback) -> None:
        capture.line_buffer += text
        *lines, capture.line_buffer = capture.line_buffer.split("\n")
        for line in lines:
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                _safe_call(on_update, payload)
                self._emit(
                    OutputChunk(
                        stream="update", text=stripped, command=capture.command, payload=payload
                    )
                )


class SandboxProvider:
    """Creates sandboxes sharing a default working directory and base environment."""

    def __init__(
        self,
        default_cwd: Path,
        base_env: Mapping[str, str] | None = None,
        *,
        default_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self.default_cwd = default_cwd
        self.base_env = dict(base_env or {})
        self.default_timeout = default_timeout

    def create(
        self,
        *,
        env: Mapping[str, str] | None = None,
        agent: str = "default",
        cwd: Path | None = None,
    ) -> HostSandbox:
        merged = {**os.environ, **self.base_env, **(env or {})}
        return HostSandbox(
            cwd=cwd or self.default_cwd,
            env=merged,
            agent=agent,
            default_timeout=self.default_timeout,
        )


__all__ = [
    "CommandResult",
    "HostSandbox",
    "OutputChunk",
    "SandboxActivity",
    "SandboxProvider",
    "build_secrets",
]
