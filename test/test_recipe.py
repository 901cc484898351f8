import pytest

from stagebuild.pipeline.core.errors import RecipeError
from stagebuild.pipeline.core.recipe import Recipe, parse_recipe, render_recipe
from stagebuild.pipeline.core.types import CmdStep, CopyStep, RunStep, Stage, WorkdirStep
from stagebuild.pipeline.stages import shared_library_recipe

SHARED_LIBRARY_DOCKERFILE = """\
FROM rust:1.82 as builder

WORKDIR /app

COPY Cargo.toml Cargo.lock* ./
COPY src ./src

RUN cargo build --release

FROM debian:12-slim
WORKDIR /out

COPY --from=builder /app/target/release/libengine.so /out/libengine.so

CMD ["ls", "-lh", "/out"]
"""


def test_parses_two_stage_recipe():
    recipe = parse_recipe(SHARED_LIBRARY_DOCKERFILE)

    builder, assembler = recipe.stages
    assert builder.name == "builder"
    assert builder.base == "rust:1.82"
    assert builder.steps == (
        WorkdirStep("/app"),
        CopyStep(sources=("Cargo.toml", "Cargo.lock*"), dest="./"),
        CopyStep(sources=("src",), dest="./src"),
        RunStep(argv=("/bin/sh", "-c", "cargo build --release"), shell=True),
    )
    assert builder.workdir == "/app"

    assert assembler.name == "1"
    assert assembler.base == "debian:12-slim"
    assert assembler.workdir == "/out"
    assert assembler.default_command == ("ls", "-lh", "/out")
    assert assembler.referenced_stages() == ["builder"]


def test_builtin_recipe_matches_dockerfile():
    assert parse_recipe(SHARED_LIBRARY_DOCKERFILE) == shared_library_recipe()


def test_render_parses_back_to_same_recipe():
    recipe = shared_library_recipe(library="libfoo.so", builder_image="rust:1.83")
    text = render_recipe(recipe)

    assert "FROM rust:1.83 AS builder" in text
    assert "COPY --from=builder /app/target/release/libfoo.so /out/libfoo.so" in text
    assert 'CMD ["ls", "-lh", "/out"]' in text
    assert parse_recipe(text) == recipe


def test_continuation_lines_and_comments():
    recipe = parse_recipe("""\
FROM toolchain:1 AS builder
# fetch then build
RUN make deps && \\
    # inline comment is dropped
    make all
FROM slim:1
COPY --from=0 /build/out.so /out/
""")
    run = recipe.stages[0].steps[0]
    assert run.text == "make deps && make all"
    # numeric --from references resolve to the stage name
    assert recipe.stages[1].steps[0].from_stage == "builder"


def test_unsupported_instruction_reports_line():
    with pytest.raises(RecipeError) as exc_info:
        parse_recipe("FROM a:1 AS b\nENV FOO=bar\nFROM c:1\n")
    assert exc_info.value.line == 2
    assert "ENV" in str(exc_info.value)


def test_forward_reference_is_rejected():
    with pytest.raises(RecipeError, match="declared before"):
        parse_recipe("FROM a:1 AS first\nCOPY --from=later /x /x\nFROM b:1 AS later\nCOPY --from=first /x /x\n")


def test_assembler_cannot_run_commands():
    with pytest.raises(RecipeError, match="cannot execute"):
        parse_recipe("FROM a:1 AS builder\nRUN make\nFROM slim:1\nRUN rm -rf /\n")


def test_assembler_cannot_copy_from_host():
    with pytest.raises(RecipeError, match="only receives artifacts"):
        parse_recipe("FROM a:1 AS builder\nRUN make\nFROM slim:1\nCOPY secrets.txt /\n")


def test_single_stage_is_rejected():
    with pytest.raises(RecipeError, match="at least one builder"):
        parse_recipe("FROM a:1\nRUN make\n")


def test_from_earlier_stage_is_rejected():
    with pytest.raises(RecipeError, match="names an earlier stage"):
        parse_recipe("FROM a:1 AS builder\nRUN make\nFROM builder\n")


def test_invalid_exec_form():
    with pytest.raises(RecipeError, match="exec form"):
        parse_recipe('FROM a:1 AS builder\nRUN ["make", 3]\nFROM slim:1\n')


def test_instruction_before_from():
    with pytest.raises(RecipeError, match="before the first FROM"):
        parse_recipe("WORKDIR /app\nFROM a:1\nFROM b:1\n")


def test_duplicate_stage_names():
    builder = Stage(name="x", base="a:1")
    with pytest.raises(RecipeError, match="duplicate"):
        Recipe(stages=(builder, Stage(name="x", base="b:1")))


def test_stage_value_objects_are_immutable():
    stage = Stage(name="builder", base="a:1", steps=(CmdStep(argv=("true",)),))
    with pytest.raises(AttributeError):
        stage.base = "b:1"
