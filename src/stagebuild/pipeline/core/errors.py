"""
Build error taxonomy.

Every error is fatal to the pipeline invocation. Each carries enough context
(stage, step, captured output) to diagnose a failure without re-running.
"""
from typing import Optional


class BuildError(Exception):
    """Base class of all pipeline failures."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        step: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.step = step

    @property
    def reason(self) -> str:
        """One-line reason used for the Failed(reason) state."""
        where = []
        if self.stage:
            where.append(f"stage '{self.stage}'")
        if self.step:
            where.append(f"step '{self.step}'")
        if where:
            return f"{type(self).__name__} in {', '.join(where)}: {self.message}"
        return f"{type(self).__name__}: {self.message}"

    def __str__(self) -> str:
        return self.reason


class RecipeError(BuildError):
    """The recipe is malformed or violates stage ordering rules."""

    def __init__(self, message: str, *, line: Optional[int] = None, **kwargs):
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message, **kwargs)
        self.line = line


class EnvironmentUnavailable(BuildError):
    """A base image reference cannot be resolved or provisioned."""

    def __init__(self, ref: str, detail: str = "", **kwargs):
        message = f"cannot provision environment '{ref}'"
        if detail:
            message += f": {detail}"
        super().__init__(message, **kwargs)
        self.ref = ref


class SourceNotFound(BuildError):
    """A declared host input does not exist."""

    def __init__(self, path: str, **kwargs):
        super().__init__(f"host input not found: {path}", **kwargs)
        self.path = path


class BuildFailed(BuildError):
    """A build command exited non-zero (or timed out: exit_code is None)."""

    def __init__(self, exit_code: Optional[int], captured_output: str = "", **kwargs):
        if exit_code is None:
            message = "command timed out"
        else:
            message = f"command exited with status {exit_code}"
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.captured_output = captured_output

    def __str__(self) -> str:
        if not self.captured_output:
            return self.reason
        return f"{self.reason}\n--- captured output ---\n{self.captured_output.rstrip()}"


class ArtifactMissing(BuildError):
    """The expected artifact path is absent from the source stage's snapshot."""

    def __init__(self, source_stage: str, path: str, **kwargs):
        super().__init__(f"artifact '{path}' not found in stage '{source_stage}'", **kwargs)
        self.source_stage = source_stage
        self.path = path


class StageNotYetBuilt(BuildError):
    """An artifact was requested from a stage that has not completed."""

    def __init__(self, source_stage: str, **kwargs):
        super().__init__(f"stage '{source_stage}' has not been built yet", **kwargs)
        self.source_stage = source_stage
