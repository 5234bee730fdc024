from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from common.errors import ResourceExceededError, RunnerError

KILL_GRACE_SECONDS = 0.5
READ_CHUNK_SIZE = 64 * 1024

StdinMode = Literal["ignore", "inherit"]


@dataclass(frozen=True)
class ProcessExit:
    exit_code: int | None
    signal: str | None


class ProcessTerminatedError(RunnerError):
    """Raised when the executor had to stop the child itself.

    ``cause`` holds the exit status observed once the child was gone, so callers
    can tell a forced stop apart from an ordinary non-zero exit.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.cause: ProcessExit | None = None


class ProcessTimeoutError(ProcessTerminatedError, TimeoutError):
    pass


class OutputLimitExceededError(ProcessTerminatedError, ResourceExceededError):
    pass


class ProcessCancelledError(ProcessTerminatedError):
    pass


class TailCapture:
    def __init__(self, max_bytes: int):
        self.max_bytes = max(0, int(max_bytes))
        self._buf = bytearray()
        self._truncated = False
        self.total_bytes = 0

    @property
    def truncated(self) -> bool:
        return self._truncated

    def push(self, data: bytes) -> None:
        if not data:
            return
        self.total_bytes += len(data)
        if self.max_bytes == 0:
            self._truncated = True
            return
        if len(data) >= self.max_bytes:
            if len(data) > self.max_bytes or self._buf:
                self._truncated = True
            self._buf = bytearray(data[len(data) - self.max_bytes :])
            return
        self._buf.extend(data)
        over = len(self._buf) - self.max_bytes
        if over > 0:
            del self._buf[:over]
            self._truncated = True

    def to_bytes(self) -> bytes:
        return bytes(self._buf)


@dataclass(frozen=True)
class ExecTailResult:
    exit_code: int | None
    signal: str | None
    duration_ms: int
    stdout_tail: str
    stderr_tail: str
    stdout_truncated: bool
    stderr_truncated: bool


@dataclass(frozen=True)
class ExecStdoutResult:
    exit_code: int | None
    signal: str | None
    duration_ms: int
    stdout: str
    stderr_tail: str
    stdout_truncated: bool
    stderr_truncated: bool


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").strip()


def _exit_status(returncode: int | None) -> ProcessExit:
    if returncode is None:
        return ProcessExit(exit_code=None, signal=None)
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return ProcessExit(exit_code=None, signal=name)
    return ProcessExit(exit_code=returncode, signal=None)


class _ChildRun:
    """One child process with its timers; settles exactly once."""

    def __init__(
        self,
        cmd: str,
        args: Sequence[str],
        *,
        cwd: str | None,
        env: Mapping[str, str] | None,
        stdin: StdinMode,
        timeout: float | None,
        cancel: asyncio.Event | None,
    ):
        if stdin not in ("ignore", "inherit"):
            raise ValueError(f"unsupported stdin mode: {stdin!r}")
        self.cmd = cmd
        self.args = [str(a) for a in args]
        self.cwd = cwd
        self.env = dict(env) if env is not None else None
        self.stdin = stdin
        self.timeout = timeout
        self.cancel = cancel
        self.proc: asyncio.subprocess.Process | None = None
        self.terminate_error: ProcessTerminatedError | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._kill_handle: asyncio.TimerHandle | None = None
        self._cancel_task: asyncio.Task[Any] | None = None
        self._terminated = asyncio.Event()
        # An inherited tty must stay in the foreground group.
        self._own_group = stdin == "ignore" and hasattr(os, "killpg")
        self.logger = logging.getLogger("runner.exec")

    def _signal(self, sig: signal.Signals) -> None:
        if self.proc is None:
            return
        if self._own_group:
            # The group outlives its leader while descendants still hold the pipes.
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.proc.pid, sig)
            return
        if self.proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self.proc.send_signal(sig)

    def terminate(self, err: ProcessTerminatedError) -> None:
        if self.terminate_error is not None:
            return
        self.terminate_error = err
        self._terminated.set()
        self.logger.warning("terminating child cmd=%s reason=%s", self.cmd, err)
        self._signal(signal.SIGTERM)
        self._kill_handle = asyncio.get_running_loop().call_later(
            KILL_GRACE_SECONDS, self._signal, signal.SIGKILL
        )

    async def _watch_cancel(self) -> None:
        assert self.cancel is not None
        await self.cancel.wait()
        self.terminate(ProcessCancelledError(f"{self.cmd} cancelled"))

    def _clear_timers(self) -> None:
        for handle in (self._timeout_handle, self._kill_handle):
            if handle is not None:
                handle.cancel()
        self._timeout_handle = None
        self._kill_handle = None
        if self._cancel_task is not None:
            self._cancel_task.cancel()
            self._cancel_task = None

    async def _pump(self, stream: asyncio.StreamReader, on_data: Callable[[bytes], None]) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            # Drain but discard once termination has started.
            if self.terminate_error is None:
                on_data(chunk)

    async def _wait_exit(self) -> None:
        assert self.proc is not None
        waiter = asyncio.ensure_future(self.proc.wait())
        terminated = asyncio.create_task(self._terminated.wait())
        try:
            await asyncio.wait({waiter, terminated}, return_when=asyncio.FIRST_COMPLETED)
            if not waiter.done():
                # SIGKILL lands one grace period after SIGTERM; the pipes get one more.
                await asyncio.wait({waiter}, timeout=2 * KILL_GRACE_SECONDS)
        finally:
            terminated.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await terminated
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter
        if not waiter.cancelled():
            waiter.result()

    async def _drain(self, pumps: asyncio.Future[Any]) -> None:
        if pumps.done():
            await pumps
            return
        # The child has exited but a descendant may still hold its pipes open.
        terminated = asyncio.create_task(self._terminated.wait())
        try:
            await asyncio.wait({pumps, terminated}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            terminated.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await terminated
        if not pumps.done():
            await asyncio.wait({pumps}, timeout=KILL_GRACE_SECONDS)
        if not pumps.done():
            self.logger.warning("abandoning output pipes held open after exit cmd=%s", self.cmd)
            pumps.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pumps
            return
        await pumps

    async def run(
        self,
        on_stdout: Callable[[bytes], None],
        on_stderr: Callable[[bytes], None],
    ) -> ProcessExit:
        self.proc = await asyncio.create_subprocess_exec(
            self.cmd,
            *self.args,
            cwd=self.cwd,
            env=self.env,
            stdin=subprocess.DEVNULL if self.stdin == "ignore" else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=self._own_group,
        )
        loop = asyncio.get_running_loop()
        pumps: asyncio.Future[Any] | None = None
        try:
            if self.timeout:
                timeout = max(0.001, float(self.timeout))
                self._timeout_handle = loop.call_later(
                    timeout,
                    self.terminate,
                    ProcessTimeoutError(f"{self.cmd} timed out after {int(timeout * 1000)}ms"),
                )
            if self.cancel is not None:
                self._cancel_task = asyncio.create_task(self._watch_cancel(), name=f"exec-cancel-{self.proc.pid}")
            assert self.proc.stdout is not None
            assert self.proc.stderr is not None
            pumps = asyncio.gather(
                self._pump(self.proc.stdout, on_stdout),
                self._pump(self.proc.stderr, on_stderr),
            )
            await self._wait_exit()
            await self._drain(pumps)
        except asyncio.CancelledError:
            if pumps is not None:
                pumps.cancel()
            self._signal(signal.SIGKILL)
            with contextlib.suppress(Exception):
                await asyncio.wait_for(self.proc.wait(), timeout=KILL_GRACE_SECONDS)
            raise
        finally:
            self._clear_timers()

        status = _exit_status(self.proc.returncode)
        if self.terminate_error is not None:
            self.terminate_error.cause = status
            raise self.terminate_error
        return status


async def exec_capture_tail(
    cmd: str,
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    stdin: StdinMode = "ignore",
    timeout: float | None = None,
    max_stdout_bytes: int,
    max_stderr_bytes: int,
    cancel: asyncio.Event | None = None,
) -> ExecTailResult:
    started = time.monotonic()
    stdout = TailCapture(max_stdout_bytes)
    stderr = TailCapture(max_stderr_bytes)
    child = _ChildRun(cmd, args, cwd=cwd, env=env, stdin=stdin, timeout=timeout, cancel=cancel)
    status = await child.run(stdout.push, stderr.push)
    return ExecTailResult(
        exit_code=status.exit_code,
        signal=status.signal,
        duration_ms=max(0, int((time.monotonic() - started) * 1000)),
        stdout_tail=_decode(stdout.to_bytes()),
        stderr_tail=_decode(stderr.to_bytes()),
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
    )


async def exec_capture_stdout(
    cmd: str,
    args: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    stdin: StdinMode = "ignore",
    timeout: float | None = None,
    max_stdout_bytes: int,
    max_stderr_bytes: int,
    cancel: asyncio.Event | None = None,
) -> ExecStdoutResult:
    stdout_limit = max(0, int(max_stdout_bytes))
    if stdout_limit <= 0:
        raise ValueError("max_stdout_bytes must be > 0")
    started = time.monotonic()
    chunks: list[bytes] = []
    stdout_bytes = 0
    stderr = TailCapture(max_stderr_bytes)
    child = _ChildRun(cmd, args, cwd=cwd, env=env, stdin=stdin, timeout=timeout, cancel=cancel)

    def on_stdout(data: bytes) -> None:
        nonlocal stdout_bytes
        stdout_bytes += len(data)
        if stdout_bytes > stdout_limit:
            child.terminate(OutputLimitExceededError(f"{cmd} output exceeded {stdout_limit} bytes"))
            return
        chunks.append(data)

    status = await child.run(on_stdout, stderr.push)
    return ExecStdoutResult(
        exit_code=status.exit_code,
        signal=status.signal,
        duration_ms=max(0, int((time.monotonic() - started) * 1000)),
        stdout=_decode(b"".join(chunks)),
        stderr_tail=_decode(stderr.to_bytes()),
        stdout_truncated=False,
        stderr_truncated=stderr.truncated,
    )
