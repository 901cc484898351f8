"""
Run a published image's default command (diagnostics: the canonical image only lists its artifacts).
"""
from typing import Optional, Sequence

from stagebuild.pipeline.core.environment import Provisionable
from stagebuild.pipeline.core.types import ExecResult


def run_image(
    provider: Provisionable,
    ref: str,
    argv: Optional[Sequence[str]] = None,
    *,
    timeout: Optional[float] = None,
) -> ExecResult:
    """
    Provision image ref and run argv (default: the image's CMD) in its working directory.

    Raises:
        EnvironmentUnavailable: the image cannot be resolved
        ValueError: no argv given and the image declares no default command
    """
    config = provider.inspect(ref)
    command = tuple(argv) if argv else config.cmd
    if not command:
        raise ValueError(f"Image {ref} has no default command")
    with provider.provision(ref) as env:
        return env.execute(command, workdir=config.workdir, timeout=timeout)
