"""
Artifact transfer: the only channel between stages.

Only the named path leaves the source stage. It passes through a private host
staging directory, so no tooling, cache or intermediate state can follow it.
"""
from __future__ import annotations
import posixpath
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from stagebuild.pipeline.core.errors import ArtifactMissing, StageNotYetBuilt
from stagebuild.pipeline.core.fingerprints import hash_path
from stagebuild.pipeline.core.types import Artifact, join_path

if TYPE_CHECKING:
    from stagebuild.pipeline.core.stage import StageExecutor


@dataclass(frozen=True)
class FetchedArtifact:
    """An artifact copied out of its source stage, waiting to be placed."""

    stage: str
    path: str  # absolute path in the source snapshot
    local_path: Path
    fingerprint: str
    size: int


def _size_of(path: Path) -> int:
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return path.stat().st_size


def resolve_dest(dest: str, workdir: str, source_path: str) -> str:
    """COPY destination semantics: a trailing "/" means "into this directory"."""
    resolved = join_path(workdir, dest)
    if dest.endswith("/") or dest in (".", "./"):
        return join_path(resolved, posixpath.basename(source_path.rstrip("/")))
    return resolved


class ArtifactTransfer:
    """Moves named artifacts between stage environments."""

    def __init__(self, staging_dir: Optional[Path] = None):
        if staging_dir is not None:
            staging_dir.mkdir(parents=True, exist_ok=True)
        self._tmp = Path(tempfile.mkdtemp(prefix="stagebuild-artifacts-", dir=staging_dir))
        self._counter = 0

    def fetch(self, source_stage: Optional["StageExecutor"], source_path: str, *, name: Optional[str] = None) -> FetchedArtifact:
        """
        Copy an artifact out of a completed stage.

        Args:
            source_stage: executor of the stage that produced the artifact
            source_path: path in that stage (relative paths resolve against "/")
            name: stage name used in errors when source_stage is None

        Raises:
            StageNotYetBuilt: source_stage is missing or has not completed
            ArtifactMissing: source_path is absent from the stage's snapshot
        """
        stage_name = source_stage.stage.name if source_stage is not None else (name or "?")
        if source_stage is None or not source_stage.completed or source_stage.env is None:
            raise StageNotYetBuilt(stage_name)

        path = join_path("/", source_path)
        if not source_stage.env.exists(path):
            raise ArtifactMissing(stage_name, path)

        self._counter += 1
        local = self._tmp / str(self._counter) / (posixpath.basename(path) or "root")
        try:
            source_stage.env.copy_to_host(path, local)
        except FileNotFoundError as e:
            raise ArtifactMissing(stage_name, path) from e

        return FetchedArtifact(
            stage=stage_name,
            path=path,
            local_path=local,
            fingerprint=hash_path(local),
            size=_size_of(local),
        )

    def record(self, fetched: FetchedArtifact, workdir: str, dest_path: str) -> Artifact:
        """The Artifact that placing fetched at dest_path (relative to workdir) produces."""
        return Artifact(
            stage=fetched.stage,
            path=fetched.path,
            dest=resolve_dest(dest_path, workdir, fetched.path),
            fingerprint=fetched.fingerprint,
            size=fetched.size,
        )

    def place(self, fetched: FetchedArtifact, dest_stage: "StageExecutor", dest_path: str) -> Artifact:
        """Copy a fetched artifact into dest_stage (dest resolves against its working directory)."""
        if dest_stage.env is None:
            raise RuntimeError(f"Stage '{dest_stage.stage.name}' is not provisioned")
        artifact = self.record(fetched, dest_stage.workdir, dest_path)
        dest_stage.env.copy_from_host(fetched.local_path, artifact.dest)
        return artifact

    def transfer(
        self,
        source_stage: Optional["StageExecutor"],
        source_path: str,
        dest_stage: "StageExecutor",
        dest_path: str,
    ) -> Artifact:
        """Fetch source_path from source_stage and place it at dest_path in dest_stage."""
        return self.place(self.fetch(source_stage, source_path), dest_stage, dest_path)

    def cleanup(self) -> None:
        shutil.rmtree(self._tmp, ignore_errors=True)
