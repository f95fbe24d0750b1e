"""Subprocess-based execution backend for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO

from persona_orchestrator.engine.backend.base import ExecutionRequest, ExecutionResult

_POLL_INTERVAL_SECONDS = 0.1


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ExecutionTimeoutError(BackendRunError):
    """The agent process overran its timeout and was terminated."""

    def __init__(self, message: str, *, timeout_seconds: int) -> None:
        super().__init__(message, transient=True)
        self.timeout_seconds = timeout_seconds


class CliAgentBackend:
    """Run a persona session by rendering a shell command template.

    The template must contain ``{prompt}`` or ``{prompt_file}``; ``{model}`` and
    ``{allowed_tools}`` are optional.
    """

    def __init__(self, command_template: str, *, default_model: str = "") -> None:
        self.command_template = command_template
        self.default_model = default_model

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        working_dir = request.working_dir
        if working_dir is not None and not working_dir.is_dir():
            raise BackendRunError(
                f"Working directory does not exist: {working_dir}",
                transient=False,
            )

        with tempfile.TemporaryDirectory(prefix="persona-orchestrator-") as scratch:
            scratch_dir = Path(scratch)
            prompt_file = scratch_dir / "prompt.txt"
            prompt_file.write_text(request.prompt, "utf-8")
            stdout_path = scratch_dir / "stdout.txt"
            stderr_path = scratch_dir / "stderr.txt"

            run_args = build_run_args(
                command_template=self.command_template,
                prompt=request.prompt,
                prompt_file=prompt_file,
                model=request.model or self.default_model,
                allowed_tools=request.allowed_tools,
            )
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code = _run_subprocess(
                        run_args=run_args,
                        cwd=working_dir,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                    )
            except FileNotFoundError as error:
                raise BackendRunError(
                    f"CLI backend command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise BackendRunError(
                    f"CLI backend failed to start: {error}",
                    transient=True,
                ) from error

            return ExecutionResult(
                stdout=stdout_path.read_text("utf-8", errors="replace"),
                stderr=stderr_path.read_text("utf-8", errors="replace"),
                exit_code=exit_code,
            )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    model: str,
    allowed_tools: tuple[str, ...],
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            model=shlex.quote(model),
            allowed_tools=shlex.quote(",".join(allowed_tools)),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


def _run_subprocess(
    *,
    run_args: list[str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=os.environ.copy(),
        stdin=subprocess.DEVNULL,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            raise ExecutionTimeoutError(
                f"Agent process exceeded timeout of {timeout_seconds}s",
                timeout_seconds=timeout_seconds,
            )
        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
