"""
Pipeline core types: stages, steps, artifacts, run records.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

StepStatus = Literal["pending", "running", "succeeded", "cached", "failed"]


@dataclass(frozen=True)
class CopyStep:
    """
    COPY instruction.

    - from_stage is None: copy host paths (relative to the build context) into the stage
    - from_stage set: artifact transfer from an earlier stage's snapshot
    """

    sources: Tuple[str, ...]
    dest: str
    from_stage: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.from_stage is not None

    def describe(self) -> str:
        prefix = f"--from={self.from_stage} " if self.from_stage is not None else ""
        return f"COPY {prefix}{' '.join(self.sources)} {self.dest}"


@dataclass(frozen=True)
class RunStep:
    """RUN instruction. Shell form is stored as ("/bin/sh", "-c", text)."""

    argv: Tuple[str, ...]
    shell: bool = False

    @classmethod
    def from_shell(cls, text: str) -> "RunStep":
        return cls(argv=("/bin/sh", "-c", text), shell=True)

    @property
    def text(self) -> str:
        return self.argv[2] if self.shell else " ".join(self.argv)

    def describe(self) -> str:
        return f"RUN {self.text}"


@dataclass(frozen=True)
class WorkdirStep:
    path: str

    def describe(self) -> str:
        return f"WORKDIR {self.path}"


@dataclass(frozen=True)
class CmdStep:
    """CMD instruction: default command of the produced image."""

    argv: Tuple[str, ...]
    shell: bool = False

    @classmethod
    def from_shell(cls, text: str) -> "CmdStep":
        return cls(argv=("/bin/sh", "-c", text), shell=True)

    def describe(self) -> str:
        if self.shell:
            return f"CMD {self.argv[2]}"
        return f"CMD {list(self.argv)}"


Step = Union[CopyStep, RunStep, WorkdirStep, CmdStep]


@dataclass(frozen=True)
class Stage:
    """
    An isolated build environment definition: base image + ordered steps.

    Immutable once defined; executed once per build invocation.
    """

    name: str
    base: str
    steps: Tuple[Step, ...] = ()

    @property
    def workdir(self) -> str:
        """Working directory in effect after the last WORKDIR step."""
        current = "/"
        for step in self.steps:
            if isinstance(step, WorkdirStep):
                current = join_path(current, step.path)
        return current

    @property
    def default_command(self) -> Optional[Tuple[str, ...]]:
        command = None
        for step in self.steps:
            if isinstance(step, CmdStep):
                command = step.argv
        return command

    def referenced_stages(self) -> List[str]:
        """Names of stages this stage pulls artifacts from (in step order)."""
        return [s.from_stage for s in self.steps if isinstance(s, CopyStep) and s.from_stage is not None]


@dataclass(frozen=True)
class Artifact:
    """
    A file (or directory) that crossed a stage boundary.

    path is the absolute path inside the source stage's final snapshot;
    dest is where it landed in the destination stage.
    """

    stage: str
    path: str
    dest: str
    fingerprint: str  # e.g. "sha256:..."
    size: int


@dataclass(frozen=True)
class ExecResult:
    """Result of running one command inside an environment."""

    exit_code: Optional[int]  # None when the command timed out
    output: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass(frozen=True)
class ImageConfig:
    """Runtime configuration attached to a published image."""

    workdir: str = "/"
    cmd: Optional[Tuple[str, ...]] = None
    base: Optional[str] = None
    artifacts: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workdir": self.workdir,
            "cmd": list(self.cmd) if self.cmd is not None else None,
            "base": self.base,
            "artifacts": list(self.artifacts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageConfig":
        cmd = data.get("cmd")
        return cls(
            workdir=data.get("workdir") or "/",
            cmd=tuple(cmd) if cmd else None,
            base=data.get("base"),
            artifacts=tuple(data.get("artifacts") or ()),
        )


@dataclass(frozen=True)
class Image:
    """The deliverable: a published image reference plus its configuration."""

    ref: str
    config: ImageConfig
    location: Optional[str] = None  # on-disk directory for the local provider


class PipelineState(str, Enum):
    START = "Start"
    BUILDER_PROVISIONED = "BuilderProvisioned"
    BUILDER_COPIED_IN = "BuilderCopiedIn"
    BUILDER_EXECUTED = "BuilderExecuted"
    ARTIFACT_TRANSFERRED = "ArtifactTransferred"
    ASSEMBLER_PROVISIONED = "AssemblerProvisioned"
    ASSEMBLER_FINALIZED = "AssemblerFinalized"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class ErrorInfo:
    type: str
    message: str
    stage: Optional[str] = None
    step: Optional[str] = None
    output: Optional[str] = None
    traceback: Optional[str] = None


@dataclass
class StepRecord:
    index: int
    instruction: str
    status: StepStatus = "pending"
    cache_key: Optional[str] = None
    duration_s: Optional[float] = None


@dataclass
class StageRecord:
    name: str
    base: str
    role: Literal["builder", "assembler"]
    status: StepStatus = "pending"
    steps: List[StepRecord] = field(default_factory=list)


@dataclass
class BuildSummary:
    """
    Overall result of one pipeline invocation (the runner's public return value).
    """

    build_id: str
    status: Literal["succeeded", "failed"]
    image: Optional[Image]
    artifacts: List[Artifact]
    stages: List[StageRecord]
    states: List[str]
    manifest_path: str
    error: Optional[ErrorInfo] = None


def join_path(base: str, path: str) -> str:
    """
    Resolve a container path against a working directory (posix semantics).

    Never escapes "/": ".." at the root stays at the root.
    """
    raw = path if path.startswith("/") else f"{base.rstrip('/')}/{path}"
    parts: List[str] = []
    for part in raw.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if parts:
                parts.pop()
            continue
        parts.append(part)
    return "/" + "/".join(parts)
