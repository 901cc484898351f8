"""
StageExecutor: common contract of builder and assembler stage execution.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Callable, Optional

from stagebuild.pipeline.core.environment import Environment, Provisionable
from stagebuild.pipeline.core.errors import BuildError, EnvironmentUnavailable
from stagebuild.pipeline.core.manifest import Manifest
from stagebuild.pipeline.core.types import PipelineState, Stage, StepStatus, join_path
from stagebuild.utils.logger import get_logger

StateCallback = Callable[[PipelineState], None]


class StageExecutor(ABC):
    """
    Executes one Stage in its own environment.

    The environment stays alive after run() so later stages can fetch
    artifacts from it; the runner releases it at the end of the build.
    """

    role: str

    def __init__(
        self,
        stage: Stage,
        provider: Provisionable,
        *,
        manifest: Optional[Manifest] = None,
        on_state: Optional[StateCallback] = None,
    ):
        self.stage = stage
        self.provider = provider
        self.manifest = manifest
        self.on_state = on_state
        self.env: Optional[Environment] = None
        self.workdir = "/"
        self.completed = False
        self.log = get_logger(stage.name)

    def provision(self, base_image_ref: Optional[str] = None) -> Environment:
        """
        Acquire the stage's base environment.

        Raises:
            EnvironmentUnavailable: the reference cannot be resolved
        """
        ref = base_image_ref or self.stage.base
        self.log.info(f"Provisioning {ref}")
        try:
            env = self.provider.provision(ref)
        except EnvironmentUnavailable as e:
            e.stage = self.stage.name
            e.step = f"FROM {ref}"
            raise
        self._attach(env)
        return env

    def _attach(self, env: Environment) -> None:
        if self.env is not None and self.env is not env:
            self.env.release()
        self.env = env

    def set_working_directory(self, path: str) -> str:
        """Change the working directory (relative paths resolve against the current one)."""
        self.workdir = join_path(self.workdir, path)
        if self.env is not None:
            self.env.make_dirs(self.workdir)
        return self.workdir

    def release(self) -> None:
        if self.env is not None:
            self.env.release()

    def _emit(self, state: PipelineState) -> None:
        if self.on_state:
            self.on_state(state)

    def _start_record(self) -> None:
        if self.manifest is not None:
            self.manifest.start_stage(
                self.stage.name,
                base=self.stage.base,
                role=self.role,
                steps=[step.describe() for step in self.stage.steps],
            )
            self.manifest.save()

    def _step_record(
        self,
        index: int,
        status: StepStatus,
        *,
        cache_key: Optional[str] = None,
        duration_s: Optional[float] = None,
    ) -> None:
        if self.manifest is not None:
            self.manifest.update_step(self.stage.name, index, status=status, cache_key=cache_key, duration_s=duration_s)
            self.manifest.save()

    def _finish_record(self, status: StepStatus) -> None:
        if self.manifest is not None:
            self.manifest.finish_stage(self.stage.name, status)
            self.manifest.save()

    def _tag_error(self, e: BuildError, step: Optional[str] = None) -> BuildError:
        if e.stage is None:
            e.stage = self.stage.name
        if e.step is None and step is not None:
            e.step = step
        return e

    @abstractmethod
    def run(self, *args, **kwargs):
        """Execute every step of the stage."""
