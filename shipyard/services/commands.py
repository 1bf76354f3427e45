"""Thin wrapper around subprocess for the git, docker and trivy CLIs."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from shipyard.exceptions import CommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    output: str


def run_command(
    args: list[str],
    *,
    cwd: Path | str | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
    check: bool = True,
    redact: tuple[str, ...] = (),
) -> CommandResult:
    """Run a command, capturing stdout and stderr together.

    Raises CommandError on a non-zero exit code when ``check`` is set, and
    on timeout or when the executable cannot be started. Strings in
    ``redact`` are masked in logs and in the output.
    """
    shown = " ".join(args)
    for secret in redact:
        if secret:
            shown = shown.replace(secret, "***")
    logger.info("Running: %s", shown)

    try:
        completed = subprocess.run(
            args,
            cwd=cwd,
            input=input_text,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        output = exc.output if isinstance(exc.output, str) else ""
        raise CommandError(args[:1], -1, f"{output}\ntimed out after {timeout}s") from exc
    except OSError as exc:
        # Executable missing or not runnable
        logger.error("Could not run %s: %s", args[0], exc)
        raise CommandError(args[:1], -1, str(exc)) from exc

    output = completed.stdout or ""
    for secret in redact:
        if secret:
            output = output.replace(secret, "***")

    if check and completed.returncode != 0:
        logger.error("%s exited with code %d", args[0], completed.returncode)
        raise CommandError(args[:1], completed.returncode, output)

    return CommandResult(args=args, returncode=completed.returncode, output=output)
