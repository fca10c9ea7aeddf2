"""Shell command handler — runs a configured command with safety guards."""

from __future__ import annotations

import asyncio
import re
from typing import Any

from loguru import logger

from taskbeat.core.scheduler.registry import ConfigField, HandlerContext

# Block destructive commands
DENY_PATTERNS: list[re.Pattern] = [
    re.compile(r"\brm\s+(-[rR]|-[rR]?f|-f?[rR])\b"),  # rm -rf, rm -r, rm -f
    re.compile(r"\bdel\s+/[fFqQ]\b"),  # Windows del /f /q
    re.compile(r"\brmdir\s+/[sS]\b"),  # Windows rmdir /s
    re.compile(r"\b(format|mkfs|diskpart)\b"),  # Disk format
    re.compile(r"\bdd\s+if="),  # dd disk copy
    re.compile(r">\s*/dev/sd"),  # Write to disk device
    re.compile(r"\b(shutdown|reboot|poweroff|halt)\b"),  # Power commands
    re.compile(r":\(\)\s*\{.*\}"),  # Fork bomb
]

MAX_OUTPUT = 10_000


class CommandError(RuntimeError):
    """Command blocked, timed out or exited non-zero."""


def check_command(command: str) -> None:
    for pattern in DENY_PATTERNS:
        if pattern.search(command):
            raise CommandError(f"Command blocked by safety filter: {command}")


def _truncate(data: bytes | None) -> str:
    text = (data or b"").decode("utf-8", errors="replace")
    if len(text) > MAX_OUTPUT:
        text = text[:MAX_OUTPUT] + f"\n... truncated ({len(text)} chars)"
    return text


class ShellCommandHandler:
    id = "shell_command"
    name = "Shell command"
    description = "Run a shell command; non-zero exit counts as a failure."
    category = "business"

    def __init__(self, timeout: int = 60):
        self.timeout = timeout
        self.config_schema = [
            ConfigField(
                name="command",
                label="Command",
                type="textarea",
                required=True,
                description="Executed through the system shell.",
            ),
            ConfigField(name="working_dir", label="Working directory"),
            ConfigField(
                name="timeout",
                label="Timeout (s)",
                type="number",
                default=timeout,
                min=1,
            ),
        ]

    async def run(self, ctx: HandlerContext) -> dict[str, Any]:
        command = ctx.config.get("command")
        if not isinstance(command, str) or not command.strip():
            raise CommandError("config.command is required")
        check_command(command)
        timeout = ctx.config.get("timeout") or self.timeout

        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=ctx.config.get("working_dir") or None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(f"Command timed out after {timeout}s: {command}") from None

        out, err = _truncate(stdout), _truncate(stderr)
        if proc.returncode != 0:
            raise CommandError(
                f"exit code {proc.returncode}: {err.strip() or out.strip() or command}"
            )

        logger.debug(f"[{ctx.task_id}] shell command finished: {command}")
        return {
            "summary": f"exit code 0 ({len(out)} chars of output)",
            "exit_code": 0,
            "stdout": out,
            "stderr": err,
        }
