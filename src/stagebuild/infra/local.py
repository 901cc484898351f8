"""stagebuild.infra.local

Directory-backed environment provider.

Image store layout:

    <image_store>/<name>/<tag>/rootfs/      filesystem of the image
    <image_store>/<name>/<tag>/image.json   runtime config (optional for base images)

Each provisioned environment is a private copy of the base filesystem in a
temporary directory. Commands run on the host with `subprocess`, using the
environment's working directory as cwd and the environment's bin directories
ahead on PATH. Absolute path arguments that point into the environment's
top-level directories are mapped to their host location.

There is no kernel-level isolation: this provider is meant for toolchains
already present on the host and for tests.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Set

from stagebuild.pipeline.core.atomic import atomic_copytree, atomic_write
from stagebuild.pipeline.core.environment import Environment, Provisionable, split_ref
from stagebuild.pipeline.core.errors import EnvironmentUnavailable
from stagebuild.pipeline.core.types import ExecResult, Image, ImageConfig, join_path
from stagebuild.utils.logger import debug

SCRATCH = "scratch"
_BIN_DIRS = ("usr/local/bin", "usr/bin", "bin")


def _decode(output) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class LocalEnvironment(Environment):
    """An environment rooted at a private host directory."""

    def __init__(self, ref: str, root: Path, on_release: Optional[Callable[[Path], None]] = None):
        self.ref = ref
        self.root = root
        self._on_release = on_release
        self._released = False

    def host_path(self, path: str) -> Path:
        """Map an absolute environment path to its host location."""
        normalized = join_path("/", path)
        return self.root / normalized.lstrip("/")

    def _translate_argv(self, argv: Sequence[str]) -> List[str]:
        top_level = {p.name for p in self.root.iterdir()}
        translated = []
        for idx, arg in enumerate(argv):
            if arg.startswith("/") and len(arg) > 1:
                first = arg.lstrip("/").split("/", 1)[0]
                if first in top_level:
                    mapped = self.host_path(arg)
                    # The program itself must exist inside the root; otherwise fall back to the host
                    if mapped.exists() or (idx > 0 and mapped.parent.exists()):
                        translated.append(str(mapped))
                        continue
            translated.append(arg)
        return translated

    def _env_vars(self) -> dict:
        env = dict(os.environ)
        bin_dirs = [str(self.root / d) for d in _BIN_DIRS if (self.root / d).is_dir()]
        env["PATH"] = os.pathsep.join(bin_dirs + [env.get("PATH", "")])
        env["STAGE_ROOT"] = str(self.root)
        return env

    def execute(
        self,
        argv: Sequence[str],
        *,
        workdir: str = "/",
        timeout: Optional[float] = None,
    ) -> ExecResult:
        if self._released:
            raise RuntimeError(f"Environment '{self.ref}' was already released")

        cwd = self.host_path(workdir)
        cwd.mkdir(parents=True, exist_ok=True)
        cmd = self._translate_argv(argv)
        debug(f"exec {cmd} (cwd={cwd})")

        try:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                env=self._env_vars(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            return ExecResult(exit_code=None, output=_decode(e.output), timed_out=True)
        except FileNotFoundError:
            return ExecResult(exit_code=127, output=f"{argv[0]}: command not found\n")
        except PermissionError:
            return ExecResult(exit_code=126, output=f"{argv[0]}: permission denied\n")

        return ExecResult(exit_code=proc.returncode, output=proc.stdout or "")

    def copy_from_host(self, host_path: Path, dest: str) -> None:
        target = self.host_path(dest)
        if host_path.is_dir():
            shutil.copytree(host_path, target, symlinks=True, dirs_exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(host_path, target)

    def copy_to_host(self, path: str, host_dest: Path) -> None:
        source = self.host_path(path)
        if not source.exists():
            raise FileNotFoundError(f"{path} does not exist in environment '{self.ref}'")
        if source.is_dir():
            shutil.copytree(source, host_dest, symlinks=True, dirs_exist_ok=True)
        else:
            host_dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, host_dest)

    def exists(self, path: str) -> bool:
        return self.host_path(path).exists()

    def make_dirs(self, path: str) -> None:
        self.host_path(path).mkdir(parents=True, exist_ok=True)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        shutil.rmtree(self.root, ignore_errors=True)
        if self._on_release:
            self._on_release(self.root)


def _check_environment(env: Environment) -> None:
    if not isinstance(env, LocalEnvironment):
        raise TypeError(f"expected a LocalEnvironment, got {type(env).__name__}")


class LocalProvider(Provisionable):
    """Provision environments from an on-disk image store."""

    name = "local"

    def __init__(self, image_store: Path, cache_dir: Path, *, work_dir: Optional[Path] = None):
        self.image_store = Path(image_store)
        self.cache_dir = Path(cache_dir)
        self.work_dir = Path(work_dir) if work_dir else None
        self._active: Set[Path] = set()

    @property
    def active_count(self) -> int:
        """Number of provisioned environments not yet released."""
        return len(self._active)

    def image_dir(self, ref: str) -> Path:
        name, tag = split_ref(ref)
        return self.image_store / name / tag

    def layer_dir(self, key: str) -> Path:
        return self.cache_dir / "layers" / key.split(":", 1)[-1]

    def _new_environment(self, ref: str, source: Optional[Path]) -> LocalEnvironment:
        if self.work_dir:
            self.work_dir.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="stagebuild-env-", dir=self.work_dir))
        try:
            if source is not None:
                shutil.copytree(source, root, symlinks=True, dirs_exist_ok=True)
        except BaseException:
            shutil.rmtree(root, ignore_errors=True)
            raise
        self._active.add(root)
        return LocalEnvironment(ref, root, on_release=self._active.discard)

    def provision(self, ref: str) -> Environment:
        if ref == SCRATCH:
            return self._new_environment(ref, None)
        try:
            rootfs = self.image_dir(ref) / "rootfs"
        except ValueError as e:
            raise EnvironmentUnavailable(ref, str(e)) from e
        if not rootfs.is_dir():
            raise EnvironmentUnavailable(ref, f"not found in image store {self.image_store}")
        debug(f"provision {ref} from {rootfs}")
        return self._new_environment(ref, rootfs)

    def has_layer(self, key: str) -> bool:
        return self.layer_dir(key).is_dir()

    def restore_layer(self, key: str) -> Environment:
        layer = self.layer_dir(key)
        if not layer.is_dir():
            raise EnvironmentUnavailable(f"layer:{key}", "layer not in cache")
        return self._new_environment(f"layer:{key}", layer)

    def commit_layer(self, env: Environment, key: str) -> None:
        _check_environment(env)
        if atomic_copytree(env.root, self.layer_dir(key)):
            debug(f"committed layer {key}")

    def publish(self, env: Environment, name: str, tag: str, config: ImageConfig) -> Image:
        _check_environment(env)
        target = self.image_store / name / tag
        target.parent.mkdir(parents=True, exist_ok=True)

        staging = Path(tempfile.mkdtemp(prefix=f".{tag}.", suffix=".tmp", dir=target.parent))
        previous: Optional[Path] = None
        try:
            shutil.copytree(env.root, staging / "rootfs", symlinks=True)
            atomic_write(json.dumps(config.to_dict(), indent=2, ensure_ascii=False), staging / "image.json")
            if target.exists():
                previous = target.parent / f".{tag}.old-{os.getpid()}"
                target.rename(previous)
            staging.rename(target)
        except BaseException:
            if previous is not None and not target.exists():
                previous.rename(target)
            shutil.rmtree(staging, ignore_errors=True)
            raise
        if previous is not None:
            shutil.rmtree(previous, ignore_errors=True)

        return Image(ref=f"{name}:{tag}", config=config, location=str(target))

    def inspect(self, ref: str) -> ImageConfig:
        if ref == SCRATCH:
            return ImageConfig()
        image_dir = self.image_dir(ref)
        if not (image_dir / "rootfs").is_dir():
            raise EnvironmentUnavailable(ref, f"not found in image store {self.image_store}")
        config_path = image_dir / "image.json"
        if not config_path.exists():
            return ImageConfig(base=ref)
        with open(config_path, "r", encoding="utf-8") as f:
            return ImageConfig.from_dict(json.load(f))
