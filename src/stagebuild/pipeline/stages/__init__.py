"""
Stage executors and the canonical shared-library recipe.
"""
from typing import Sequence

from stagebuild.pipeline.core.recipe import Recipe
from stagebuild.pipeline.core.types import CmdStep, CopyStep, RunStep, Stage, WorkdirStep

from .assembler import AssemblerStageExecutor
from .builder import BuilderStageExecutor


def shared_library_recipe(
    *,
    builder_image: str = "rust:1.82",
    runtime_image: str = "debian:12-slim",
    library: str = "libengine.so",
    manifests: Sequence[str] = ("Cargo.toml", "Cargo.lock*"),
    source_dir: str = "src",
    build_command: str = "cargo build --release",
    build_dir: str = "/app",
    output_dir: str = "/out",
) -> Recipe:
    """
    Two-stage recipe: compile a native shared library, ship only the .so.

    Equivalent to:

        FROM rust:1.82 AS builder
        WORKDIR /app
        COPY Cargo.toml Cargo.lock* ./
        COPY src ./src
        RUN cargo build --release

        FROM debian:12-slim
        WORKDIR /out
        COPY --from=builder /app/target/release/libengine.so /out/libengine.so
        CMD ["ls", "-lh", "/out"]
    """
    artifact = f"{build_dir.rstrip('/')}/target/release/{library}"
    builder = Stage(
        name="builder",
        base=builder_image,
        steps=(
            WorkdirStep(build_dir),
            # Manifests first: their layer survives source-only changes
            CopyStep(sources=tuple(manifests), dest="./"),
            CopyStep(sources=(source_dir,), dest=f"./{source_dir}"),
            RunStep.from_shell(build_command),
        ),
    )
    assembler = Stage(
        name="1",
        base=runtime_image,
        steps=(
            WorkdirStep(output_dir),
            CopyStep(sources=(artifact,), dest=f"{output_dir.rstrip('/')}/{library}", from_stage="builder"),
            CmdStep(argv=("ls", "-lh", output_dir)),
        ),
    )
    return Recipe(stages=(builder, assembler))


__all__ = [
    "AssemblerStageExecutor",
    "BuilderStageExecutor",
    "shared_library_recipe",
]
