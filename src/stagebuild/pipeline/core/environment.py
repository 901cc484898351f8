"""
Environment / Provisionable: the capability interface every base-environment provider satisfies.

The pipeline never assumes anything about base images beyond this contract:
a provisioned environment can run commands, receive files from the host,
hand files back, and be released.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence

from stagebuild.pipeline.core.types import ExecResult, Image, ImageConfig


class Environment(ABC):
    """A provisioned, isolated filesystem + command interpreter."""

    ref: str

    @abstractmethod
    def execute(
        self,
        argv: Sequence[str],
        *,
        workdir: str = "/",
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """
        Run argv with workdir as the current directory.

        Never raises on non-zero exit; the caller decides what a failure means.
        Timeouts are reported as ExecResult(exit_code=None, timed_out=True).
        """

    @abstractmethod
    def copy_from_host(self, host_path: Path, dest: str) -> None:
        """Copy a host file or directory to the absolute path dest (parents created)."""

    @abstractmethod
    def copy_to_host(self, path: str, host_dest: Path) -> None:
        """Copy the file or directory at path out to host_dest."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Whether an absolute path exists in the environment."""

    @abstractmethod
    def make_dirs(self, path: str) -> None:
        """Create a directory (and parents) in the environment."""

    @abstractmethod
    def release(self) -> None:
        """Tear the environment down. Must be idempotent."""

    def __enter__(self) -> "Environment":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class Provisionable(ABC):
    """
    A provider of environments.

    Layers are committed filesystem snapshots addressed by cache key; they
    are only ever appended, never modified.
    """

    name: str

    @abstractmethod
    def provision(self, ref: str) -> Environment:
        """
        Acquire a fresh environment from a base image reference.

        Raises:
            EnvironmentUnavailable: the reference cannot be resolved
        """

    @abstractmethod
    def has_layer(self, key: str) -> bool:
        """Whether a layer with this cache key exists."""

    @abstractmethod
    def restore_layer(self, key: str) -> Environment:
        """Acquire a fresh environment from a committed layer."""

    @abstractmethod
    def commit_layer(self, env: Environment, key: str) -> None:
        """Snapshot env as the layer for key (no-op if the key already exists)."""

    @abstractmethod
    def publish(self, env: Environment, name: str, tag: str, config: ImageConfig) -> Image:
        """Publish env's filesystem as image name:tag with config. Atomic."""

    @abstractmethod
    def inspect(self, ref: str) -> ImageConfig:
        """
        Read the runtime configuration of an image.

        Raises:
            EnvironmentUnavailable: the reference cannot be resolved
        """


def split_ref(ref: str) -> tuple[str, str]:
    """Split "name[:tag]" into (name, tag); tag defaults to "latest"."""
    if not ref:
        raise ValueError("Empty image reference")
    name, sep, tag = ref.rpartition(":")
    # "host:5000/name" has a ":" in the registry part, not a tag
    if not sep or "/" in tag:
        return ref, "latest"
    return name, tag
