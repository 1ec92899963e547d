"""Async ``git`` invocation.

Runs git in a subprocess without blocking the event loop. Unlike
``subprocess.run(check=True)`` a non-zero exit is not an exception here:
merge conflicts are reported through exit codes and the executor needs to
inspect them.

Example:
    >>> result = await run_git("/repo", "rev-parse", "--abbrev-ref", "HEAD")
    >>> if result.ok:
    ...     print(result.stdout)
    main
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path

import structlog

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GitResult:
    """Captured output of one git command.

    Attributes:
        args: Arguments passed after ``git``
        stdout: Decoded, stripped standard output
        stderr: Decoded, stripped standard error
        exit_code: Process exit status
    """

    args: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def lines(self) -> list[str]:
        """Non-empty stdout lines."""
        return [line for line in self.stdout.splitlines() if line.strip()]


async def run_git(
    repo_path: Path | str,
    *args: str,
    timeout: float | None = None,
) -> GitResult:
    """Run ``git <args>`` inside ``repo_path``.

    Args:
        repo_path: Working copy the command runs in
        *args: git arguments, e.g. "merge", "--no-ff", "origin/feature"
        timeout: Seconds before the process is killed; None waits forever

    Returns:
        GitResult with decoded output. Bytes that are not valid UTF-8 are
        replaced rather than raising.

    Raises:
        TimeoutError: The command exceeded ``timeout``. The process is killed
            first.
        FileNotFoundError: git is not installed or ``repo_path`` is missing.
    """
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(repo_path),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        # Never leave a git process running against a shared working tree.
        process.kill()
        await process.wait()
        raise

    result = GitResult(
        args=tuple(args),
        stdout=(stdout_bytes or b"").decode("utf-8", errors="replace").strip(),
        stderr=(stderr_bytes or b"").decode("utf-8", errors="replace").strip(),
        exit_code=process.returncode or 0,
    )
    log.debug("git_command", args=args[:3], exit_code=result.exit_code)
    return result
