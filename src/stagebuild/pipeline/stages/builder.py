"""
Builder Stage: provision a toolchain, copy in dependency manifests and source, run the build.

Layer caching: every COPY/RUN step gets a chained cache key. The longest
prefix of steps whose layers already exist is restored instead of executed,
so changing only source files keeps the dependency-manifest layers valid.
"""
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from stagebuild.pipeline.core.cache import LayerCache
from stagebuild.pipeline.core.environment import Provisionable
from stagebuild.pipeline.core.errors import BuildError, BuildFailed, EnvironmentUnavailable, RecipeError, SourceNotFound
from stagebuild.pipeline.core.fingerprints import base_layer_key, hash_path, short_key, step_cache_key
from stagebuild.pipeline.core.manifest import Manifest
from stagebuild.pipeline.core.stage import StageExecutor, StateCallback
from stagebuild.pipeline.core.transfer import ArtifactTransfer, FetchedArtifact
from stagebuild.pipeline.core.types import (
    Artifact,
    CmdStep,
    CopyStep,
    ExecResult,
    PipelineState,
    RunStep,
    Stage,
    Step,
    WorkdirStep,
    join_path,
)

_GLOB_CHARS = ("*", "?", "[")


def is_glob(source: str) -> bool:
    return any(c in source for c in _GLOB_CHARS)


def resolve_host_sources(context: Path, step: CopyStep) -> List[Path]:
    """
    Resolve the host paths of a COPY step against the build context.

    Literal sources must exist. Glob sources are optional and may match
    nothing (e.g. "Cargo.lock*" when there is no lockfile).

    Raises:
        SourceNotFound: a literal source does not exist
        RecipeError: a source is absolute or escapes the build context
    """
    context = context.resolve()
    matched: List[Path] = []
    for source in step.sources:
        if source.startswith("/"):
            raise RecipeError(f"COPY source must be relative to the build context: {source}", step=step.describe())
        if is_glob(source):
            matched.extend(sorted(context.glob(source)))
            continue
        path = context / source
        if not path.exists():
            raise SourceNotFound(source, step=step.describe())
        matched.append(path)

    for path in matched:
        if not path.resolve().is_relative_to(context):
            raise RecipeError(f"COPY source escapes the build context: {path}", step=step.describe())
    return matched


def copies_into_directory(step: CopyStep) -> bool:
    """Whether COPY places sources inside dest (rather than at dest)."""
    return step.dest.endswith("/") or step.dest in (".", "..") or len(step.sources) > 1 or any(
        is_glob(s) for s in step.sources
    )


@dataclass
class PlannedStep:
    index: int
    step: Step
    workdir: str  # working directory in effect for the step
    key: Optional[str] = None  # layer cache key (COPY/RUN only)
    host_paths: List[Path] = field(default_factory=list)
    fetched: List[FetchedArtifact] = field(default_factory=list)


class BuilderStageExecutor(StageExecutor):
    """Executes a builder stage."""

    role = "builder"

    def __init__(
        self,
        stage: Stage,
        provider: Provisionable,
        *,
        context: Path,
        cache: LayerCache,
        transfer: ArtifactTransfer,
        built: Optional[Dict[str, StageExecutor]] = None,
        timeout: Optional[float] = None,
        manifest: Optional[Manifest] = None,
        on_state: Optional[StateCallback] = None,
    ):
        super().__init__(stage, provider, manifest=manifest, on_state=on_state)
        self.context = Path(context)
        self.cache = cache
        self.transfer = transfer
        self.built = built if built is not None else {}
        self.timeout = timeout
        self.artifacts: List[Artifact] = []

    def copy_in(self, host_paths: Sequence[Path], dest_dir: str, *, into_directory: bool = True) -> None:
        """
        Copy host paths into the working directory.

        Directories contribute their contents; files land inside dest_dir
        (or at dest_dir exactly when into_directory is False).

        Raises:
            SourceNotFound: a host path does not exist
        """
        if self.env is None:
            raise RuntimeError(f"Stage '{self.stage.name}' is not provisioned")
        for path in host_paths:
            if not path.exists():
                raise SourceNotFound(str(path), stage=self.stage.name)

        dest = join_path(self.workdir, dest_dir)
        for path in host_paths:
            if path.is_dir() or not into_directory:
                target = dest
            else:
                target = join_path(dest, path.name)
            self.log.debug(f"copy {path} -> {target}")
            self.env.copy_from_host(path, target)

    def execute(self, command: Sequence[str]) -> ExecResult:
        """
        Run a command in the working directory.

        Raises:
            BuildFailed: non-zero exit or timeout; captured output attached
        """
        if self.env is None:
            raise RuntimeError(f"Stage '{self.stage.name}' is not provisioned")
        result = self.env.execute(command, workdir=self.workdir, timeout=self.timeout)
        if result.output:
            for line in result.output.rstrip().splitlines():
                self.log.debug(line)
        if not result.ok:
            raise BuildFailed(result.exit_code, result.output, stage=self.stage.name)
        return result

    def plan(self) -> List[PlannedStep]:
        """Resolve inputs and compute cache keys for every step, without executing anything."""
        key = base_layer_key(self.stage.base)
        workdir = "/"
        planned: List[PlannedStep] = []

        for idx, step in enumerate(self.stage.steps):
            if isinstance(step, WorkdirStep):
                workdir = join_path(workdir, step.path)
                planned.append(PlannedStep(idx, step, workdir))
                continue
            if isinstance(step, CmdStep):
                planned.append(PlannedStep(idx, step, workdir))
                continue

            item = PlannedStep(idx, step, workdir)
            inputs: Dict[str, str] = {}
            try:
                if isinstance(step, CopyStep) and not step.is_transfer:
                    item.host_paths = resolve_host_sources(self.context, step)
                    context = self.context.resolve()
                    for path in item.host_paths:
                        inputs[path.resolve().relative_to(context).as_posix()] = hash_path(path)
                elif isinstance(step, CopyStep):
                    for source in step.sources:
                        fetched = self.transfer.fetch(self.built.get(step.from_stage), source, name=step.from_stage)
                        item.fetched.append(fetched)
                        inputs[f"{fetched.stage}:{fetched.path}"] = fetched.fingerprint
            except BuildError as e:
                raise self._tag_error(e, step.describe())

            key = step_cache_key(key, step, workdir, inputs)
            item.key = key
            planned.append(item)

        return planned

    def _restore(self, planned: PlannedStep) -> None:
        self.log.info(f"Restoring cached layer {short_key(planned.key)}")
        try:
            env = self.provider.restore_layer(planned.key)
        except EnvironmentUnavailable as e:
            raise self._tag_error(e, planned.step.describe())
        self._attach(env)
        self.workdir = planned.workdir

    def run(self) -> "BuilderStageExecutor":
        """
        Provision, copy in, execute. Leaves the environment alive for artifact transfer.
        """
        self._start_record()
        total = len(self.stage.steps)
        try:
            plan = self.plan()

            # Longest prefix of layer steps already in the cache
            resume_at = -1
            for pos, item in enumerate(plan):
                if item.key is None:
                    continue
                if not self.cache.lookup(item.key):
                    break
                resume_at = pos

            if resume_at >= 0:
                self._restore(plan[resume_at])
                for item in plan[: resume_at + 1]:
                    status = "cached" if item.key is not None else "succeeded"
                    self.log.info(f"[{item.index + 1}/{total}] {item.step.describe()} ({status})")
                    self._step_record(item.index, status, cache_key=item.key)
                    if isinstance(item.step, CopyStep):
                        for fetched in item.fetched:
                            self.artifacts.append(self.transfer.record(fetched, item.workdir, item.step.dest))
            else:
                self.provision()
            self.env.make_dirs(self.workdir)
            self._emit(PipelineState.BUILDER_PROVISIONED)

            copied_in = False
            for item in plan[resume_at + 1:]:
                step = item.step
                if isinstance(step, RunStep) and not copied_in:
                    self._emit(PipelineState.BUILDER_COPIED_IN)
                    copied_in = True

                self.log.info(f"[{item.index + 1}/{total}] {step.describe()}")
                self._step_record(item.index, "running")
                started = time.monotonic()
                try:
                    self._apply(item)
                except BuildError as e:
                    self._step_record(item.index, "failed", duration_s=time.monotonic() - started)
                    raise self._tag_error(e, step.describe())

                self.cache.store(self.env, item.key)
                self._step_record(item.index, "succeeded", cache_key=item.key, duration_s=time.monotonic() - started)

            if not copied_in:
                self._emit(PipelineState.BUILDER_COPIED_IN)
            self.completed = True
            self._emit(PipelineState.BUILDER_EXECUTED)
        except BaseException:
            self._finish_record("failed")
            raise

        self._finish_record("succeeded")
        self.log.success("Stage complete")
        return self

    def _apply(self, item: PlannedStep) -> None:
        step = item.step
        if isinstance(step, WorkdirStep):
            self.set_working_directory(step.path)
        elif isinstance(step, CmdStep):
            # Builder filesystems are discarded; only the assembler's CMD matters
            self.log.debug(f"ignoring {step.describe()} in builder stage")
        elif isinstance(step, CopyStep) and not step.is_transfer:
            self.copy_in(item.host_paths, step.dest, into_directory=copies_into_directory(step))
        elif isinstance(step, CopyStep):
            for fetched in item.fetched:
                self.artifacts.append(self.transfer.place(fetched, self, step.dest))
        elif isinstance(step, RunStep):
            self.execute(step.argv)
