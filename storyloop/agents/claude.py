"""
Claude agent integration for storyloop.

Claude implements the current item. The brief goes in via stdin (or as an
argument when the agents.yaml template has {prompt}); the outcome comes
back out of band through `storyloop signal`, so only the exit status and
usage numbers are read here.
"""

import json
import logging
import os
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from storyloop.lib.agents_config import AgentsConfig, get_stage_command

logger = logging.getLogger(__name__)

# How often a running agent checks the cancel event (seconds)
CANCEL_POLL_SECONDS = 1.0


@dataclass
class AgentResult:
    success: bool
    exit_code: int
    duration_seconds: float
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None
    stdout: str = ""
    timed_out: bool = False
    cancelled: bool = False


class CodingAgent(ABC):
    """Runs the external coding agent on a brief."""

    @abstractmethod
    def run(
        self,
        brief: str,
        cwd: Path,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> AgentResult:
        pass


def parse_usage(stdout: str) -> tuple[int, int, Optional[str]]:
    """Read token usage from the --output-format json wrapper.

    Returns: (input_tokens, output_tokens, error). error is set when the
    wrapper reports is_error.
    """
    try:
        wrapper = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return 0, 0, None
    if not isinstance(wrapper, dict):
        return 0, 0, None

    usage = wrapper.get("usage") or {}
    input_tokens = int(usage.get("input_tokens") or 0)
    output_tokens = int(usage.get("output_tokens") or 0)
    error = None
    if wrapper.get("is_error"):
        error = str(wrapper.get("result") or "Agent reported an error")
    return input_tokens, output_tokens, error


class ClaudeAgent(CodingAgent):
    def __init__(
        self,
        config: AgentsConfig | None = None,
        extra_env: dict[str, str] | None = None,
        log_dir: Path | None = None,
    ):
        self.config = config or AgentsConfig()
        self.extra_env = extra_env or {}
        self.log_dir = log_dir

    def _env(self) -> dict[str, str]:
        # Remove ANTHROPIC_API_KEY so Claude uses OAuth credentials instead
        env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}
        env.update(self.extra_env)
        return env

    def run(
        self,
        brief: str,
        cwd: Path,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> AgentResult:
        """
        Run the implement command to completion, timeout or cancellation.

        Never raises for agent failures; a missing binary is exit code 127.
        """
        stage_cmd = get_stage_command(self.config, "implement", {"prompt": brief, "repo": str(cwd)})
        stdin_input = stage_cmd.get_stdin_input(brief)
        start = time.monotonic()

        logger.info(f"[AGENT] Running {stage_cmd.cmd[0]} in {cwd} (timeout {timeout}s)")
        try:
            proc = subprocess.Popen(
                stage_cmd.cmd,
                cwd=str(cwd),
                stdin=subprocess.PIPE if stdin_input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=self._env(),
            )
        except (FileNotFoundError, PermissionError) as e:
            return AgentResult(
                success=False,
                exit_code=127,
                duration_seconds=0.0,
                error=f"Cannot start agent: {e}",
            )

        deadline = start + timeout
        pending_input = stdin_input
        stopped = None
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                stopped = "timeout"
            elif cancel is not None and cancel.is_set():
                stopped = "cancelled"
            if stopped:
                proc.kill()
                stdout, stderr = proc.communicate()
                break
            try:
                # Input can only be passed on the first call
                stdout, stderr = proc.communicate(
                    input=pending_input,
                    timeout=min(CANCEL_POLL_SECONDS, remaining),
                )
                break
            except subprocess.TimeoutExpired:
                pending_input = None

        duration = time.monotonic() - start
        self._write_log(stage_cmd.cmd, proc.returncode, stdout, stderr)

        if stopped == "timeout":
            logger.warning(f"[AGENT] Timed out after {timeout}s")
            return AgentResult(
                success=False, exit_code=-1, duration_seconds=duration,
                error=f"Agent timed out after {timeout}s", stdout=stdout or "", timed_out=True,
            )
        if stopped == "cancelled":
            logger.warning("[AGENT] Cancelled")
            return AgentResult(
                success=False, exit_code=-1, duration_seconds=duration,
                error="Agent run cancelled", stdout=stdout or "", cancelled=True,
            )

        input_tokens, output_tokens, wrapped_error = (0, 0, None)
        if stage_cmd.output_format == "json":
            input_tokens, output_tokens, wrapped_error = parse_usage(stdout or "")

        if proc.returncode != 0:
            tail = (stderr or "").strip().splitlines()
            error = tail[-1] if tail else f"Agent exited with code {proc.returncode}"
        else:
            error = wrapped_error

        return AgentResult(
            success=proc.returncode == 0 and error is None,
            exit_code=proc.returncode,
            duration_seconds=duration,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error=error,
            stdout=stdout or "",
        )

    def _write_log(self, cmd: list[str], exit_code: int, stdout: str, stderr: str) -> None:
        if self.log_dir is None:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            stamp = time.strftime("%Y%m%d-%H%M%S")
            (self.log_dir / f"agent-{stamp}.log").write_text(
                f"=== COMMAND ===\n{cmd[0]}\n\n"
                f"=== EXIT CODE ===\n{exit_code}\n\n"
                f"=== STDOUT ===\n{stdout}\n\n"
                f"=== STDERR ===\n{stderr}\n"
            )
        except OSError as e:
            logger.warning(f"[AGENT] Failed to write log: {e}")
