"""
Assembler Stage: minimal runtime image holding only the transferred artifacts.

No command is executed here. The artifacts leave their builder stages first,
then the runtime base is provisioned, the artifacts are placed, and the image
is published with its working directory and default command.
"""
from typing import Dict, List, Optional, Sequence, Tuple

from stagebuild.pipeline.core.environment import Provisionable
from stagebuild.pipeline.core.errors import BuildError
from stagebuild.pipeline.core.manifest import Manifest
from stagebuild.pipeline.core.stage import StageExecutor, StateCallback
from stagebuild.pipeline.core.transfer import ArtifactTransfer, FetchedArtifact
from stagebuild.pipeline.core.types import (
    Artifact,
    CmdStep,
    CopyStep,
    Image,
    ImageConfig,
    PipelineState,
    Stage,
    WorkdirStep,
)


class AssemblerStageExecutor(StageExecutor):
    """Executes the final stage of a recipe."""

    role = "assembler"

    def __init__(
        self,
        stage: Stage,
        provider: Provisionable,
        *,
        transfer: ArtifactTransfer,
        built: Dict[str, StageExecutor],
        manifest: Optional[Manifest] = None,
        on_state: Optional[StateCallback] = None,
    ):
        super().__init__(stage, provider, manifest=manifest, on_state=on_state)
        self.transfer = transfer
        self.built = built
        self.default_command: Optional[Tuple[str, ...]] = None
        self.artifacts: List[Artifact] = []

    def set_default_command(self, argv: Sequence[str]) -> None:
        """Declare what runs when the image is invoked without a command."""
        if not argv:
            raise ValueError("Default command must not be empty")
        self.default_command = tuple(argv)

    def fetch_artifacts(self) -> Dict[int, List[FetchedArtifact]]:
        """
        Copy every COPY --from source out of its builder.

        Raises:
            StageNotYetBuilt: a referenced stage has not completed
            ArtifactMissing: a referenced path is absent
        """
        fetched: Dict[int, List[FetchedArtifact]] = {}
        for idx, step in enumerate(self.stage.steps):
            if not isinstance(step, CopyStep):
                continue
            items = []
            for source in step.sources:
                try:
                    items.append(self.transfer.fetch(self.built.get(step.from_stage), source, name=step.from_stage))
                except BuildError as e:
                    self._step_record(idx, "failed")
                    raise self._tag_error(e, step.describe())
                self.log.info(f"Fetched {step.from_stage}:{items[-1].path} ({items[-1].size} bytes)")
            fetched[idx] = items
        return fetched

    def finalize(self, name: str, tag: str = "latest") -> Image:
        """Publish the assembled filesystem as name:tag."""
        if self.env is None:
            raise RuntimeError(f"Stage '{self.stage.name}' is not provisioned")
        cmd = self.default_command
        if cmd is None:
            cmd = self.provider.inspect(self.stage.base).cmd
        config = ImageConfig(
            workdir=self.workdir,
            cmd=cmd,
            base=self.stage.base,
            artifacts=tuple(a.dest for a in self.artifacts),
        )
        image = self.provider.publish(self.env, name, tag, config)
        self.log.success(f"Published {image.ref}")
        return image

    def run(self, name: str, tag: str = "latest") -> Image:
        total = len(self.stage.steps)
        self._start_record()
        try:
            fetched = self.fetch_artifacts()
            self._emit(PipelineState.ARTIFACT_TRANSFERRED)

            self.provision()
            self._emit(PipelineState.ASSEMBLER_PROVISIONED)

            for idx, step in enumerate(self.stage.steps):
                self.log.info(f"[{idx + 1}/{total}] {step.describe()}")
                if isinstance(step, WorkdirStep):
                    self.set_working_directory(step.path)
                elif isinstance(step, CmdStep):
                    self.set_default_command(step.argv)
                elif isinstance(step, CopyStep):
                    for item in fetched[idx]:
                        self.artifacts.append(self.transfer.place(item, self, step.dest))
                self._step_record(idx, "succeeded")

            image = self.finalize(name, tag)
            self.completed = True
            self._emit(PipelineState.ASSEMBLER_FINALIZED)
        except BaseException:
            self._finish_record("failed")
            raise

        self._finish_record("succeeded")
        return image
