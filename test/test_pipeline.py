import json
from pathlib import Path

import pytest

from stagebuild.pipeline.core.errors import BuildFailed, EnvironmentUnavailable, SourceNotFound
from stagebuild.pipeline.core.recipe import parse_recipe
from stagebuild.pipeline.core.runner import PipelineRunner
from stagebuild.pipeline.core.types import PipelineState
from stagebuild.pipeline.image import run_image

from conftest import RECIPE

HAPPY_PATH = [
    "Start",
    "BuilderProvisioned",
    "BuilderCopiedIn",
    "BuilderExecuted",
    "ArtifactTransferred",
    "AssemblerProvisioned",
    "AssemblerFinalized",
    "Done",
]


def _build(provider, config, project, *, tag="test", recipe_text=RECIPE):
    runner = PipelineRunner(provider, config)
    return runner, runner.run(parse_recipe(recipe_text), project, name="engine", tag=tag)


def test_build_publishes_image_with_only_the_artifact(provider, config, project, image_store, fetch_log):
    runner, summary = _build(provider, config, project)

    assert summary.status == "succeeded"
    assert summary.states == HAPPY_PATH
    assert summary.image.ref == "engine:test"

    rootfs = image_store / "engine" / "test" / "rootfs"
    assert sorted(p.name for p in rootfs.iterdir()) == ["etc", "out"]
    out_files = list((rootfs / "out").iterdir())
    assert [p.name for p in out_files] == ["libengine.so"]
    assert out_files[0].stat().st_size > 0

    # Nothing from the toolchain image or the build tree leaks into the final image
    assert not (rootfs / "usr").exists()
    assert not (rootfs / "app").exists()

    [artifact] = summary.artifacts
    assert artifact.stage == "builder"
    assert artifact.path == "/app/target/release/libengine.so"
    assert artifact.dest == "/out/libengine.so"
    assert artifact.fingerprint.startswith("sha256:")


def test_default_command_lists_the_artifact(provider, config, project, fetch_log):
    _build(provider, config, project)

    result = run_image(provider, "engine:test")

    assert result.exit_code == 0
    assert "libengine.so" in result.output
    config_data = json.loads((Path(config.image_store) / "engine" / "test" / "image.json").read_text())
    assert config_data["workdir"] == "/out"
    assert config_data["cmd"] == ["ls", "-lh", "/out"]
    assert config_data["artifacts"] == ["/out/libengine.so"]


def test_environments_are_released(provider, config, project, tmp_path, fetch_log):
    _build(provider, config, project)

    assert provider.active_count == 0
    assert list((tmp_path / "work").iterdir()) == []


def test_compile_error_fails_without_image(provider, config, project, image_store, tmp_path, fetch_log):
    (project / "src" / "lib.rs").write_text('compile_error!("broken");\n', encoding="utf-8")
    runner = PipelineRunner(provider, config)

    with pytest.raises(BuildFailed) as exc_info:
        runner.run(parse_recipe(RECIPE), project, name="engine", tag="test", build_id="broken")

    err = exc_info.value
    assert err.exit_code == 101
    assert "could not compile engine" in err.captured_output
    assert err.stage == "builder"
    assert err.step == "RUN fake-cargo build --release"

    assert PipelineState.ASSEMBLER_PROVISIONED not in runner.states
    assert runner.states[-1] == PipelineState.FAILED
    assert not (image_store / "engine").exists()
    assert provider.active_count == 0

    manifest = json.loads((tmp_path / "runs" / "broken" / "manifest.json").read_text())
    assert manifest["build"]["status"] == "failed"
    assert manifest["error"]["type"] == "BuildFailed"
    assert "could not compile engine" in manifest["error"]["output"]
    assert manifest["states"][-1]["state"] == "Failed"
    steps = manifest["stages"]["builder"]["steps"]
    assert steps[-1]["status"] == "failed"


def test_missing_source_fails_before_any_step(provider, config, project, fetch_log):
    import shutil

    shutil.rmtree(project / "src")
    runner = PipelineRunner(provider, config)

    with pytest.raises(SourceNotFound) as exc_info:
        runner.run(parse_recipe(RECIPE), project, name="engine")

    assert exc_info.value.path == "src"
    assert exc_info.value.stage == "builder"
    assert runner.states == [PipelineState.START, PipelineState.FAILED]
    assert not fetch_log.exists()


def test_missing_lockfile_is_not_an_error(provider, config, project, fetch_log):
    (project / "Cargo.lock").unlink()

    _, summary = _build(provider, config, project)

    assert summary.status == "succeeded"


def test_unknown_base_image(provider, config, project):
    recipe = RECIPE.replace("FROM toolchain:1", "FROM toolchain:404")
    runner = PipelineRunner(provider, config)

    with pytest.raises(EnvironmentUnavailable) as exc_info:
        runner.run(parse_recipe(recipe), project, name="engine")

    assert exc_info.value.ref == "toolchain:404"
    assert exc_info.value.stage == "builder"
    assert runner.states[-1] == PipelineState.FAILED


def test_source_change_reuses_dependency_layers(provider, config, project, fetch_log):
    _, first = _build(provider, config, project, tag="v1")
    assert fetch_log.read_text().splitlines() == ["fetched"]

    (project / "src" / "lib.rs").write_text("pub fn engine() { /* v2 */ }\n", encoding="utf-8")
    _, second = _build(provider, config, project, tag="v2")

    # The fetch step came from cache
    assert fetch_log.read_text().splitlines() == ["fetched"]
    builder = next(s for s in second.stages if s.name == "builder")
    statuses = [step.status for step in builder.steps]
    assert statuses == ["succeeded", "cached", "cached", "succeeded", "succeeded"]
    assert first.artifacts[0].fingerprint != second.artifacts[0].fingerprint


def test_manifest_change_refetches_dependencies(provider, config, project, fetch_log):
    _build(provider, config, project, tag="v1")

    (project / "Cargo.toml").write_text('[package]\nname = "engine"\nversion = "0.2.0"\n', encoding="utf-8")
    _build(provider, config, project, tag="v2")

    assert fetch_log.read_text().splitlines() == ["fetched", "fetched"]


def test_unchanged_inputs_are_fully_cached(provider, config, project, fetch_log):
    _build(provider, config, project, tag="v1")
    _, second = _build(provider, config, project, tag="v2")

    builder = next(s for s in second.stages if s.name == "builder")
    assert [step.status for step in builder.steps][1:] == ["cached"] * 4
    assert fetch_log.read_text().splitlines() == ["fetched"]


def test_rebuild_without_cache_is_reproducible(provider, config, project, fetch_log):
    config.use_cache = False
    _, first = _build(provider, config, project, tag="a")
    _, second = _build(provider, config, project, tag="b")

    assert first.artifacts[0].fingerprint == second.artifacts[0].fingerprint
    assert fetch_log.read_text().splitlines() == ["fetched", "fetched"]


def test_step_timeout_is_a_build_failure(provider, config, project):
    config.step_timeout = 0.5
    recipe = """\
FROM toolchain:1 AS builder
RUN ["sleep", "5"]

FROM slim:1
COPY --from=builder /etc/nothing /out/
"""
    runner = PipelineRunner(provider, config)

    with pytest.raises(BuildFailed) as exc_info:
        runner.run(parse_recipe(recipe), project, name="engine")

    assert exc_info.value.exit_code is None
    assert "timed out" in str(exc_info.value)


def test_missing_artifact_stops_before_assembler_provisions(provider, config, project, fetch_log):
    recipe = RECIPE.replace("/app/target/release/libengine.so", "/app/target/release/libmissing.so")
    runner = PipelineRunner(provider, config)

    from stagebuild.pipeline.core.errors import ArtifactMissing

    with pytest.raises(ArtifactMissing):
        runner.run(parse_recipe(recipe), project, name="engine")

    assert PipelineState.BUILDER_EXECUTED in runner.states
    assert PipelineState.ASSEMBLER_PROVISIONED not in runner.states
    assert provider.active_count == 0


def test_reused_build_id_starts_a_fresh_manifest(provider, config, project, tmp_path, fetch_log):
    lib = project / "src" / "lib.rs"
    lib.write_text('compile_error!("broken");\n', encoding="utf-8")
    with pytest.raises(BuildFailed):
        PipelineRunner(provider, config).run(parse_recipe(RECIPE), project, name="engine", build_id="same")

    lib.write_text("pub fn engine() {}\n", encoding="utf-8")
    PipelineRunner(provider, config).run(parse_recipe(RECIPE), project, name="engine", build_id="same")

    manifest = json.loads((tmp_path / "runs" / "same" / "manifest.json").read_text())
    assert manifest["build"]["status"] == "succeeded"
    assert manifest["error"] is None
    assert [entry["state"] for entry in manifest["states"]] == HAPPY_PATH
    assert len(manifest["artifacts"]) == 1


PACKAGED_RECIPE = RECIPE.replace(
    "FROM slim:1\nWORKDIR /out\nCOPY --from=builder /app/target/release/libengine.so /out/libengine.so\n",
    "FROM slim:1 AS packager\n"
    "COPY --from=builder /app/target/release/libengine.so /pkg/\n"
    "\n"
    "FROM slim:1\n"
    "WORKDIR /out\n"
    "COPY --from=packager /pkg/libengine.so /out/libengine.so\n",
)


def test_cached_transfer_step_still_reports_its_artifact(provider, config, project, fetch_log):
    _, first = _build(provider, config, project, tag="v1", recipe_text=PACKAGED_RECIPE)
    _, second = _build(provider, config, project, tag="v2", recipe_text=PACKAGED_RECIPE)

    packager = next(s for s in second.stages if s.name == "packager")
    assert [step.status for step in packager.steps] == ["cached"]

    expected = [("builder", "/pkg/libengine.so"), ("packager", "/out/libengine.so")]
    assert [(a.stage, a.dest) for a in first.artifacts] == expected
    assert [(a.stage, a.dest) for a in second.artifacts] == expected
