from pathlib import Path

import pytest

from stagebuild.pipeline.core.cache import LayerCache
from stagebuild.pipeline.core.errors import ArtifactMissing, StageNotYetBuilt
from stagebuild.pipeline.core.transfer import ArtifactTransfer, resolve_dest
from stagebuild.pipeline.core.types import Stage
from stagebuild.pipeline.stages import AssemblerStageExecutor, BuilderStageExecutor


def _builder(provider, project, transfer):
    return BuilderStageExecutor(
        Stage(name="builder", base="toolchain:1"),
        provider,
        context=project,
        cache=LayerCache(provider, enabled=False),
        transfer=transfer,
    )


def _assembler(provider, transfer, built):
    return AssemblerStageExecutor(Stage(name="final", base="slim:1"), provider, transfer=transfer, built=built)


@pytest.fixture
def transfer(tmp_path: Path):
    t = ArtifactTransfer(tmp_path / "staging")
    yield t
    t.cleanup()


def test_unbuilt_stage_cannot_supply_artifacts(provider, project, transfer):
    builder = _builder(provider, project, transfer)
    builder.provision()
    final = _assembler(provider, transfer, {"builder": builder})
    final.provision()
    try:
        with pytest.raises(StageNotYetBuilt) as exc_info:
            transfer.transfer(builder, "/usr/lib/toolchain/rustc.marker", final, "/out/")
        assert exc_info.value.source_stage == "builder"
    finally:
        builder.release()
        final.release()


def test_unknown_stage_cannot_supply_artifacts(transfer):
    with pytest.raises(StageNotYetBuilt):
        transfer.fetch(None, "/x", name="ghost")


def test_missing_path_is_reported(provider, project, transfer):
    builder = _builder(provider, project, transfer)
    builder.provision()
    builder.completed = True
    try:
        with pytest.raises(ArtifactMissing) as exc_info:
            transfer.fetch(builder, "/app/target/release/libengine.so")
        assert exc_info.value.path == "/app/target/release/libengine.so"
    finally:
        builder.release()


def test_only_the_named_file_crosses(provider, project, transfer, tmp_path):
    builder = _builder(provider, project, transfer)
    builder.provision()
    builder.set_working_directory("/app")
    builder.copy_in([project / "Cargo.toml", project / "src"], ".")
    builder.completed = True

    final = _assembler(provider, transfer, {"builder": builder})
    final.provision()
    final.set_working_directory("/out")
    try:
        artifact = transfer.transfer(builder, "/app/Cargo.toml", final, "./")

        assert artifact.dest == "/out/Cargo.toml"
        assert artifact.size == len((project / "Cargo.toml").read_bytes())
        assert final.env.exists("/out/Cargo.toml")
        assert not final.env.exists("/app")
        assert not final.env.exists("/usr/lib/toolchain/rustc.marker")
        # directory sources contribute their contents
        assert builder.env.exists("/app/lib.rs")
    finally:
        builder.release()
        final.release()


def test_resolve_dest():
    assert resolve_dest("/out/", "/", "/app/lib.so") == "/out/lib.so"
    assert resolve_dest("lib.so", "/out", "/app/libengine.so") == "/out/lib.so"
    assert resolve_dest(".", "/out", "/app/libengine.so") == "/out/libengine.so"
