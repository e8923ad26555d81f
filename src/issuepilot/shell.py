from __future__ import annotations

from collections.abc import Mapping
import logging
import os
import subprocess

from issuepilot.observability import log_warning_event


class CommandError(RuntimeError):
    def __init__(self, message: str, *, exit_code: int, stdout: str, stderr: str) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


LOGGER = logging.getLogger("issuepilot.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    return compact if len(compact) <= limit else f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
) -> str:
    """Run ``argv`` and return its stdout.

    ``env`` entries are layered over the current environment.
    """
    merged_env = {**os.environ, **env} if env else None
    proc = subprocess.run(
        argv,
        input=input_text,
        env=merged_env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and proc.returncode != 0:
        log_warning_event(
            LOGGER,
            "command_failed",
            command=" ".join(argv),
            exit_code=proc.returncode,
            stderr=_preview(proc.stderr),
            stdout=_preview(proc.stdout),
        )
        raise CommandError(
            f"Command failed: {' '.join(argv)} (exit {proc.returncode})\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            exit_code=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
    return proc.stdout
