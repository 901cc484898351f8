"""
PipelineRunner: executes a Recipe stage by stage and drives the build state machine.

    Start -> BuilderProvisioned -> BuilderCopiedIn -> BuilderExecuted
          -> ArtifactTransferred -> AssemblerProvisioned -> AssemblerFinalized -> Done

Any failure moves to the terminal Failed state. There is no resume: a failed
build is re-run from Start. Every provisioned environment is released when
the run ends, whatever the outcome.
"""
import traceback
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from stagebuild.config.settings import BuildConfig
from stagebuild.pipeline.core.cache import LayerCache
from stagebuild.pipeline.core.environment import Provisionable
from stagebuild.pipeline.core.errors import BuildError, BuildFailed, SourceNotFound
from stagebuild.pipeline.core.fingerprints import fingerprint_recipe
from stagebuild.pipeline.core.manifest import Manifest
from stagebuild.pipeline.core.recipe import Recipe
from stagebuild.pipeline.core.stage import StageExecutor
from stagebuild.pipeline.core.transfer import ArtifactTransfer
from stagebuild.pipeline.core.types import (
    Artifact,
    BuildSummary,
    ErrorInfo,
    Image,
    PipelineState,
    StageRecord,
    StepRecord,
)
from stagebuild.pipeline.stages.assembler import AssemblerStageExecutor
from stagebuild.pipeline.stages.builder import BuilderStageExecutor, resolve_host_sources
from stagebuild.utils.logger import error, info, success


class PipelineRunner:
    """Pipeline orchestrator."""

    def __init__(self, provider: Provisionable, config: Optional[BuildConfig] = None):
        self.provider = provider
        self.config = config or BuildConfig()
        self.states: List[PipelineState] = []
        self.manifest: Optional[Manifest] = None

    def _transition(self, state: PipelineState, reason: Optional[str] = None) -> None:
        self.states.append(state)
        if reason:
            info(f"State -> {state.value}({reason})")
        else:
            info(f"State -> {state.value}")
        if self.manifest is not None:
            self.manifest.record_state(state.value, reason)
            self.manifest.save()

    def preflight(self, recipe: Recipe, context: Path) -> None:
        """
        Check every host input before anything is provisioned.

        Raises:
            SourceNotFound: the build context or a literal COPY source is missing
        """
        if not context.is_dir():
            raise SourceNotFound(str(context), step="build context")
        for stage_name, step in recipe.host_inputs():
            try:
                resolve_host_sources(context, step)
            except BuildError as e:
                if e.stage is None:
                    e.stage = stage_name
                raise

    def run(
        self,
        recipe: Recipe,
        context: Path,
        *,
        name: str,
        tag: str = "latest",
        build_id: Optional[str] = None,
    ) -> BuildSummary:
        """
        Run the whole pipeline.

        Args:
            recipe: validated recipe
            context: host build context (COPY sources resolve against it)
            name: image name to publish
            tag: image tag
            build_id: id of this invocation (generated if omitted)

        Returns:
            BuildSummary of the succeeded build

        Raises:
            BuildError: the first failure, after the manifest has recorded it
        """
        context = Path(context)
        build_id = build_id or uuid.uuid4().hex[:12]
        manifest_path = self.config.runs_path() / build_id / "manifest.json"
        # No resume: a reused build id replaces the previous record
        self.manifest = Manifest(manifest_path, load=False)
        self.manifest.set_build(
            build_id,
            recipe_fingerprint=fingerprint_recipe(list(recipe.stages)),
            context=str(context.resolve()),
            provider=self.provider.name,
        )
        self.states = []
        self._transition(PipelineState.START)

        cache = LayerCache(self.provider, enabled=self.config.use_cache)
        transfer = ArtifactTransfer()
        built: Dict[str, StageExecutor] = {}
        executors: List[StageExecutor] = []
        image: Optional[Image] = None
        artifacts: List[Artifact] = []

        try:
            self.preflight(recipe, context)

            for stage in recipe.builders:
                info(f"\n{'=' * 60}")
                info(f"Stage: {stage.name} (builder, {stage.base})")
                info(f"{'=' * 60}")
                executor = BuilderStageExecutor(
                    stage,
                    self.provider,
                    context=context,
                    cache=cache,
                    transfer=transfer,
                    built=built,
                    timeout=self.config.timeout,
                    manifest=self.manifest,
                    on_state=self._transition,
                )
                executors.append(executor)
                executor.run()
                built[stage.name] = executor
                artifacts.extend(executor.artifacts)

            stage = recipe.assembler
            info(f"\n{'=' * 60}")
            info(f"Stage: {stage.name} (assembler, {stage.base})")
            info(f"{'=' * 60}")
            assembler = AssemblerStageExecutor(
                stage,
                self.provider,
                transfer=transfer,
                built=built,
                manifest=self.manifest,
                on_state=self._transition,
            )
            executors.append(assembler)
            image = assembler.run(name, tag)
            artifacts.extend(assembler.artifacts)

            for artifact in artifacts:
                self.manifest.register_artifact(artifact)
            self.manifest.set_image(image)
            self.manifest.finish("succeeded")
            self._transition(PipelineState.DONE)
        except BaseException as e:
            error_info = _error_info(e)
            self.manifest.set_error(error_info)
            self.manifest.finish("failed")
            reason = e.reason if isinstance(e, BuildError) else f"{type(e).__name__}: {e}"
            self._transition(PipelineState.FAILED, reason)
            error(f"Build failed: {e}")
            raise
        finally:
            for executor in reversed(executors):
                executor.release()
            transfer.cleanup()

        info(f"Layer cache: {cache.hits} hit(s), {cache.misses} miss(es)")
        success(f"Build {build_id} completed: {image.ref}")
        return BuildSummary(
            build_id=build_id,
            status="succeeded",
            image=image,
            artifacts=artifacts,
            stages=_stage_records(self.manifest),
            states=[s.value for s in self.states],
            manifest_path=str(manifest_path),
        )


def _error_info(e: BaseException) -> ErrorInfo:
    if isinstance(e, BuildError):
        return ErrorInfo(
            type=type(e).__name__,
            message=e.message,
            stage=e.stage,
            step=e.step,
            output=e.captured_output if isinstance(e, BuildFailed) else None,
        )
    return ErrorInfo(
        type=type(e).__name__,
        message=str(e),
        traceback=traceback.format_exc(),
    )


def _stage_records(manifest: Manifest) -> List[StageRecord]:
    records = []
    for data in manifest.data["stages"].values():
        records.append(StageRecord(
            name=data["name"],
            base=data["base"],
            role=data["role"],
            status=data["status"],
            steps=[
                StepRecord(
                    index=s["index"],
                    instruction=s["instruction"],
                    status=s["status"],
                    cache_key=s.get("cache_key"),
                    duration_s=s.get("duration_s"),
                )
                for s in data["steps"]
            ],
        ))
    return records
