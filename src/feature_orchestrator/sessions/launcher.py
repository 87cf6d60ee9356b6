"""Turn a command template into a running worker process."""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from ..errors import SpawnFailed


# Stream-json lines from workers can be far larger than asyncio's 64 KiB default.
STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True)
class LaunchSpec:
    argv: list[str]
    cwd: Path
    stdin_payload: Optional[str] = None


def build_launch_spec(
    template: str,
    *,
    prompt: str,
    prompt_file: Path,
    session_id: str,
    project_dir: Path,
) -> LaunchSpec:
    """Format a worker command template.

    The template must accept the prompt through `{prompt_file}`, `{prompt}`,
    or a bare `-` argument (prompt written to stdin).

    Raises:
        SpawnFailed: If the template has an unknown placeholder or no way to pass the prompt.
    """
    try:
        # Placeholders are substituted per argument so prompts with spaces stay one argv entry.
        raw_parts = shlex.split(template)
        argv = [
            part.format(
                prompt_file=str(prompt_file),
                prompt=prompt,
                session_id=session_id,
                project_dir=str(project_dir),
            )
            for part in raw_parts
        ]
    except (KeyError, IndexError, ValueError) as exc:
        raise SpawnFailed(f"Invalid worker command template {template!r}: {exc}") from exc
    if not argv:
        raise SpawnFailed("Worker command template is empty")

    uses_prompt_placeholder = "{prompt_file}" in template or "{prompt}" in template
    expects_stdin = "-" in raw_parts
    if not uses_prompt_placeholder and not expects_stdin:
        raise SpawnFailed("Worker command must include {prompt_file}, {prompt}, or '-' to accept stdin input.")
    return LaunchSpec(
        argv=argv,
        cwd=project_dir,
        stdin_payload=prompt if expects_stdin and not uses_prompt_placeholder else None,
    )


async def launch(spec: LaunchSpec) -> asyncio.subprocess.Process:
    """Start the worker process described by `spec`.

    Raises:
        SpawnFailed: If the working directory is invalid or the OS refuses to create the process.
    """
    if not spec.cwd.is_dir():
        raise SpawnFailed(f"Working directory does not exist: {spec.cwd}")
    try:
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=str(spec.cwd),
            stdin=asyncio.subprocess.PIPE if spec.stdin_payload is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
    except OSError as exc:
        raise SpawnFailed(f"Unable to start worker '{spec.argv[0]}': {exc}") from exc

    if spec.stdin_payload is not None and process.stdin is not None:
        try:
            process.stdin.write(spec.stdin_payload.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Worker pid {} closed stdin before the prompt was written", process.pid)
        finally:
            process.stdin.close()
    logger.debug("Spawned worker pid {}: {}", process.pid, " ".join(shlex.quote(a) for a in spec.argv[:3]))
    return process
