"""
Recipe: an immutable, validated sequence of stages.

Also parses and renders the Dockerfile subset used by staged build recipes:

    FROM <ref> [AS <name>]
    WORKDIR <path>
    COPY [--from=<stage>] <src>... <dest>
    RUN <shell command> | RUN ["exec", "form"]
    CMD <shell command> | CMD ["exec", "form"]
"""
from __future__ import annotations
import json
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from stagebuild.pipeline.core.errors import RecipeError
from stagebuild.pipeline.core.types import CmdStep, CopyStep, RunStep, Stage, Step, WorkdirStep

SUPPORTED_INSTRUCTIONS = ("FROM", "WORKDIR", "COPY", "RUN", "CMD")


@dataclass(frozen=True)
class Recipe:
    """
    Ordered stages. The last stage is the assembler; all others are builders.

    Validated on construction:
    - at least one builder and the assembler
    - unique stage names
    - COPY --from only references stages declared strictly earlier
    - FROM never names an earlier stage (stages do not share filesystems)
    - the assembler only sets WORKDIR/CMD and transfers artifacts
    """

    stages: Tuple[Stage, ...]

    def __post_init__(self):
        validate_stages(self.stages)

    @property
    def builders(self) -> Tuple[Stage, ...]:
        return self.stages[:-1]

    @property
    def assembler(self) -> Stage:
        return self.stages[-1]

    def index_of(self, name: str) -> int:
        for idx, stage in enumerate(self.stages):
            if stage.name == name:
                return idx
        raise KeyError(f"Unknown stage: {name}")

    def get(self, name: str) -> Stage:
        return self.stages[self.index_of(name)]

    def host_inputs(self) -> List[Tuple[str, CopyStep]]:
        """(stage name, step) for every COPY that reads from the host."""
        return [
            (stage.name, step)
            for stage in self.stages
            for step in stage.steps
            if isinstance(step, CopyStep) and not step.is_transfer
        ]


def validate_stages(stages: Tuple[Stage, ...]) -> None:
    if len(stages) < 2:
        raise RecipeError("a recipe needs at least one builder stage and an assembler stage")

    seen: Dict[str, int] = {}
    for idx, stage in enumerate(stages):
        if not stage.name:
            raise RecipeError(f"stage #{idx} has no name")
        if stage.name in seen:
            raise RecipeError(f"duplicate stage name '{stage.name}'", stage=stage.name)
        if stage.base in seen:
            raise RecipeError(
                f"FROM '{stage.base}' names an earlier stage; stages only share artifacts through COPY --from",
                stage=stage.name,
            )
        for ref in stage.referenced_stages():
            if ref == stage.name:
                raise RecipeError("stage copies from itself", stage=stage.name)
            if ref not in seen:
                raise RecipeError(
                    f"COPY --from='{ref}' must reference a stage declared before '{stage.name}'",
                    stage=stage.name,
                )
        seen[stage.name] = idx

    assembler = stages[-1]
    for step in assembler.steps:
        if isinstance(step, RunStep):
            raise RecipeError(
                "the assembler stage cannot execute commands", stage=assembler.name, step=step.describe()
            )
        if isinstance(step, CopyStep) and not step.is_transfer:
            raise RecipeError(
                "the assembler stage only receives artifacts from earlier stages",
                stage=assembler.name,
                step=step.describe(),
            )


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _logical_lines(text: str) -> Iterator[Tuple[int, str]]:
    """Yield (first line number, joined line), handling comments and backslash continuation."""
    buffer: List[str] = []
    start = 0
    for lineno, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if buffer and stripped.startswith("#"):
            # Comments inside a continuation are dropped
            continue
        if not buffer:
            start = lineno
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        yield start, " ".join(part for part in buffer if part)
        buffer = []
    if buffer:
        yield start, " ".join(part for part in buffer if part)


def _parse_command(args: str, lineno: int, instruction: str) -> Tuple[Tuple[str, ...], bool]:
    """Return (argv, shell_form)."""
    if args.startswith("["):
        try:
            argv = json.loads(args)
        except json.JSONDecodeError as e:
            raise RecipeError(f"{instruction}: invalid exec form: {e}", line=lineno) from e
        if not isinstance(argv, list) or not argv or not all(isinstance(a, str) for a in argv):
            raise RecipeError(f"{instruction}: exec form must be a non-empty list of strings", line=lineno)
        return tuple(argv), False
    if not args:
        raise RecipeError(f"{instruction} needs a command", line=lineno)
    return ("/bin/sh", "-c", args), True


def _parse_copy(args: str, lineno: int) -> CopyStep:
    try:
        tokens = shlex.split(args)
    except ValueError as e:
        raise RecipeError(f"COPY: {e}", line=lineno) from e

    from_stage: Optional[str] = None
    while tokens and tokens[0].startswith("--"):
        flag = tokens.pop(0)
        if flag.startswith("--from="):
            from_stage = flag.split("=", 1)[1]
            if not from_stage:
                raise RecipeError("COPY --from needs a stage name", line=lineno)
        else:
            raise RecipeError(f"COPY: unsupported flag {flag}", line=lineno)

    if len(tokens) < 2:
        raise RecipeError("COPY needs at least one source and a destination", line=lineno)
    return CopyStep(sources=tuple(tokens[:-1]), dest=tokens[-1], from_stage=from_stage)


def parse_recipe(text: str) -> Recipe:
    """
    Parse recipe text into a validated Recipe.

    Unnamed stages are named by their index ("0", "1", ...), so COPY --from
    can reference them either way.

    Raises:
        RecipeError: unsupported instruction, malformed arguments, or
            ordering violations (line numbers are included where known)
    """
    stages: List[Stage] = []
    current_name: Optional[str] = None
    current_base: Optional[str] = None
    current_steps: List[Step] = []
    aliases: Dict[str, str] = {}

    def close_stage() -> None:
        if current_base is not None:
            stages.append(Stage(name=current_name or str(len(stages)), base=current_base, steps=tuple(current_steps)))

    for lineno, line in _logical_lines(text):
        keyword, _, args = line.partition(" ")
        keyword = keyword.upper()
        args = args.strip()

        if keyword not in SUPPORTED_INSTRUCTIONS:
            raise RecipeError(f"unsupported instruction '{keyword}'", line=lineno)

        if keyword == "FROM":
            close_stage()
            tokens = args.split()
            if len(tokens) == 1:
                current_name = None
            elif len(tokens) == 3 and tokens[1].upper() == "AS":
                current_name = tokens[2]
            else:
                raise RecipeError("FROM expects '<ref> [AS <name>]'", line=lineno)
            current_base = tokens[0]
            current_steps = []
            if current_name:
                aliases[str(len(stages))] = current_name
            continue

        if current_base is None:
            raise RecipeError(f"{keyword} before the first FROM", line=lineno)

        if keyword == "WORKDIR":
            if not args:
                raise RecipeError("WORKDIR needs a path", line=lineno)
            current_steps.append(WorkdirStep(path=args))
        elif keyword == "COPY":
            step = _parse_copy(args, lineno)
            if step.from_stage in aliases:
                step = CopyStep(sources=step.sources, dest=step.dest, from_stage=aliases[step.from_stage])
            current_steps.append(step)
        elif keyword == "RUN":
            argv, shell = _parse_command(args, lineno, "RUN")
            current_steps.append(RunStep(argv=argv, shell=shell))
        elif keyword == "CMD":
            argv, shell = _parse_command(args, lineno, "CMD")
            current_steps.append(CmdStep(argv=argv, shell=shell))

    close_stage()
    return Recipe(stages=tuple(stages))


def load_recipe(path: Path) -> Recipe:
    """Read and parse a recipe file."""
    return parse_recipe(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _render_step(step: Step) -> str:
    if isinstance(step, WorkdirStep):
        return f"WORKDIR {step.path}"
    if isinstance(step, CopyStep):
        flag = f"--from={step.from_stage} " if step.from_stage is not None else ""
        return f"COPY {flag}{' '.join(step.sources)} {step.dest}"
    if isinstance(step, (RunStep, CmdStep)):
        keyword = "RUN" if isinstance(step, RunStep) else "CMD"
        if step.shell:
            return f"{keyword} {step.argv[2]}"
        return f"{keyword} {json.dumps(list(step.argv))}"
    raise TypeError(f"Unknown step: {step!r}")


def render_recipe(recipe: Recipe) -> str:
    """Render a Recipe back to Dockerfile text."""
    blocks = []
    for idx, stage in enumerate(recipe.stages):
        header = f"FROM {stage.base}"
        if stage.name != str(idx):
            header += f" AS {stage.name}"
        lines = [header, *(_render_step(step) for step in stage.steps)]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"
