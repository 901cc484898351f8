import stat
from pathlib import Path

import pytest

from stagebuild.config.settings import BuildConfig
from stagebuild.infra.local import LocalProvider

FAKE_CARGO = """#!/bin/sh
# "fetch" stages dependencies; "build" concatenates sources into the library
set -e
if [ "$1" = "fetch" ]; then
    mkdir -p .deps
    cp Cargo.toml .deps/Cargo.toml
    if [ -n "$FETCH_LOG" ]; then echo fetched >> "$FETCH_LOG"; fi
    exit 0
fi
if grep -q "compile_error!" src/*.rs; then
    echo "error: could not compile engine" >&2
    exit 101
fi
mkdir -p target/release
cat Cargo.toml src/*.rs > target/release/libengine.so
echo "Finished release"
"""

RECIPE = """\
# test recipe
FROM toolchain:1 AS builder
WORKDIR /app
COPY Cargo.toml Cargo.lock* ./
RUN fake-cargo fetch
COPY src ./src
RUN fake-cargo build --release

FROM slim:1
WORKDIR /out
COPY --from=builder /app/target/release/libengine.so /out/libengine.so
CMD ["ls", "-lh", "/out"]
"""


@pytest.fixture
def image_store(tmp_path: Path) -> Path:
    store = tmp_path / "images"

    toolchain = store / "toolchain" / "1" / "rootfs"
    (toolchain / "usr" / "bin").mkdir(parents=True)
    (toolchain / "usr" / "lib" / "toolchain").mkdir(parents=True)
    (toolchain / "usr" / "lib" / "toolchain" / "rustc.marker").write_text("toolchain\n", encoding="utf-8")
    cargo = toolchain / "usr" / "bin" / "fake-cargo"
    cargo.write_text(FAKE_CARGO, encoding="utf-8")
    cargo.chmod(cargo.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    slim = store / "slim" / "1" / "rootfs"
    (slim / "etc").mkdir(parents=True)
    (slim / "etc" / "os-release").write_text("NAME=slim\n", encoding="utf-8")

    return store


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[package]\nname = "engine"\n', encoding="utf-8")
    (root / "Cargo.lock").write_text("# lock\n", encoding="utf-8")
    (root / "src" / "lib.rs").write_text("pub fn engine() {}\n", encoding="utf-8")
    (root / "README.md").write_text("not copied\n", encoding="utf-8")
    return root


@pytest.fixture
def fetch_log(tmp_path: Path, monkeypatch) -> Path:
    log = tmp_path / "fetch.log"
    monkeypatch.setenv("FETCH_LOG", str(log))
    return log


@pytest.fixture
def config(tmp_path: Path, image_store: Path) -> BuildConfig:
    return BuildConfig(
        image_store=str(image_store),
        cache_dir=str(tmp_path / "cache"),
        runs_dir=str(tmp_path / "runs"),
        step_timeout=60,
    )


@pytest.fixture
def provider(tmp_path: Path, image_store: Path) -> LocalProvider:
    return LocalProvider(image_store, tmp_path / "cache", work_dir=tmp_path / "work")
