"""stagebuild.infra.docker

Environment provider backed by the `docker` CLI.

Every mutating step runs in a throwaway container which is then committed
to a new image, so an environment is just "the current image id". Layers are
tagged `stagebuild-layer:<key>`; published images are committed with WORKDIR
and CMD changes.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Set

from stagebuild.pipeline.core.environment import Environment, Provisionable, split_ref
from stagebuild.pipeline.core.errors import EnvironmentUnavailable
from stagebuild.pipeline.core.fingerprints import short_key
from stagebuild.pipeline.core.types import ExecResult, Image, ImageConfig, join_path
from stagebuild.utils.logger import debug, warning

LAYER_REPOSITORY = "stagebuild-layer"


class DockerError(RuntimeError):
    """The docker CLI failed for a reason other than the build command itself."""


class DockerEnvironment(Environment):
    """An environment identified by its current image id."""

    def __init__(self, provider: "DockerProvider", ref: str, image_id: str):
        self.ref = ref
        self.image = image_id
        self._provider = provider
        self._intermediates: List[str] = []
        self._released = False

    def _create(self) -> str:
        """Create (but do not start) a container from the current image."""
        proc = self._provider.docker("create", "--entrypoint", "true", self.image)
        return proc.stdout.strip()

    def _commit(self, container: str) -> None:
        proc = self._provider.docker("commit", container)
        self.image = proc.stdout.strip()
        self._intermediates.append(self.image)

    def _remove(self, container: str) -> None:
        self._provider.docker("rm", "-f", container, check=False)

    def execute(
        self,
        argv: Sequence[str],
        *,
        workdir: str = "/",
        timeout: Optional[float] = None,
    ) -> ExecResult:
        name = f"stagebuild-{uuid.uuid4().hex[:12]}"
        cmd = [
            self._provider.docker_bin, "run",
            "--name", name,
            "-w", workdir,
            "--entrypoint", argv[0],
            self.image,
            *argv[1:],
        ]
        debug(f"exec {cmd}")
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            self._remove(name)
            output = e.output.decode("utf-8", errors="replace") if isinstance(e.output, bytes) else (e.output or "")
            return ExecResult(exit_code=None, output=output, timed_out=True)

        try:
            if proc.returncode == 0:
                self._commit(name)
        finally:
            self._remove(name)
        return ExecResult(exit_code=proc.returncode, output=proc.stdout or "")

    def _copy_tree_to_root(self, staging: Path) -> None:
        # Copying "<staging>/." to "/" creates missing parent directories,
        # which works even on images without a shell.
        container = self._create()
        try:
            self._provider.docker("cp", f"{staging}/.", f"{container}:/")
            self._commit(container)
        finally:
            self._remove(container)

    def copy_from_host(self, host_path: Path, dest: str) -> None:
        with tempfile.TemporaryDirectory(prefix="stagebuild-cp-") as tmp:
            staging = Path(tmp)
            target = staging / join_path("/", dest).lstrip("/")
            if host_path.is_dir():
                shutil.copytree(host_path, target, symlinks=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(host_path, target)
            self._copy_tree_to_root(staging)

    def copy_to_host(self, path: str, host_dest: Path) -> None:
        container = self._create()
        try:
            host_dest.parent.mkdir(parents=True, exist_ok=True)
            proc = self._provider.docker("cp", f"{container}:{path}", str(host_dest), check=False)
            if proc.returncode != 0:
                raise FileNotFoundError(f"{path} does not exist in environment '{self.ref}': {proc.stdout.strip()}")
        finally:
            self._remove(container)

    def exists(self, path: str) -> bool:
        container = self._create()
        try:
            proc = subprocess.run(
                [self._provider.docker_bin, "cp", f"{container}:{path}", "-"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            return proc.returncode == 0
        finally:
            self._remove(container)

    def make_dirs(self, path: str) -> None:
        with tempfile.TemporaryDirectory(prefix="stagebuild-mkdir-") as tmp:
            staging = Path(tmp)
            (staging / join_path("/", path).lstrip("/")).mkdir(parents=True, exist_ok=True)
            self._copy_tree_to_root(staging)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        for image_id in reversed(self._intermediates):
            if image_id in self._provider.protected:
                continue
            self._provider.docker("rmi", image_id, check=False)


def _check_environment(env: Environment) -> None:
    if not isinstance(env, DockerEnvironment):
        raise TypeError(f"expected a DockerEnvironment, got {type(env).__name__}")


class DockerProvider(Provisionable):
    """Provision environments as docker images."""

    name = "docker"

    def __init__(self, docker_bin: str = "docker"):
        self.docker_bin = docker_bin
        # Image ids referenced by a layer tag or a published image
        self.protected: Set[str] = set()

    def docker(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.docker_bin, *args]
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, errors="replace")
        except FileNotFoundError as e:
            raise DockerError(f"docker CLI not found: {self.docker_bin}") from e
        if check and proc.returncode != 0:
            raise DockerError(f"{' '.join(cmd)} failed ({proc.returncode}): {proc.stdout.strip()}")
        return proc

    def _image_id(self, ref: str) -> Optional[str]:
        proc = self.docker("image", "inspect", "--format", "{{.Id}}", ref, check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip()

    def _layer_tag(self, key: str) -> str:
        return f"{LAYER_REPOSITORY}:{short_key(key, 32)}"

    def provision(self, ref: str) -> Environment:
        try:
            split_ref(ref)
            image_id = self._image_id(ref)
            if image_id is None:
                debug(f"pulling {ref}")
                self.docker("pull", ref)
                image_id = self._image_id(ref)
        except (DockerError, ValueError) as e:
            raise EnvironmentUnavailable(ref, str(e)) from e
        if image_id is None:
            raise EnvironmentUnavailable(ref, "image not found after pull")
        return DockerEnvironment(self, ref, image_id)

    def has_layer(self, key: str) -> bool:
        try:
            return self._image_id(self._layer_tag(key)) is not None
        except DockerError:
            return False

    def restore_layer(self, key: str) -> Environment:
        tag = self._layer_tag(key)
        try:
            image_id = self._image_id(tag)
        except DockerError as e:
            raise EnvironmentUnavailable(tag, str(e)) from e
        if image_id is None:
            raise EnvironmentUnavailable(tag, "layer not in cache")
        return DockerEnvironment(self, tag, image_id)

    def commit_layer(self, env: Environment, key: str) -> None:
        _check_environment(env)
        if self.has_layer(key):
            return
        self.docker("tag", env.image, self._layer_tag(key))
        self.protected.add(env.image)

    def publish(self, env: Environment, name: str, tag: str, config: ImageConfig) -> Image:
        _check_environment(env)
        ref = f"{name}:{tag}"
        changes = ["--change", f"WORKDIR {config.workdir}"]
        if config.cmd is not None:
            changes += ["--change", f"CMD {json.dumps(list(config.cmd))}"]
        labels = {"stagebuild.base": config.base or "", "stagebuild.artifacts": ",".join(config.artifacts)}
        for key, value in labels.items():
            changes += ["--change", f"LABEL {key}={json.dumps(value)}"]

        container = env._create()
        try:
            proc = self.docker("commit", *changes, container, ref)
        finally:
            env._remove(container)
        self.protected.add(proc.stdout.strip())
        return Image(ref=ref, config=config)

    def inspect(self, ref: str) -> ImageConfig:
        try:
            proc = self.docker("image", "inspect", "--format", "{{json .Config}}", ref, check=False)
        except DockerError as e:
            raise EnvironmentUnavailable(ref, str(e)) from e
        if proc.returncode != 0:
            raise EnvironmentUnavailable(ref, proc.stdout.strip())
        try:
            data = json.loads(proc.stdout) or {}
        except json.JSONDecodeError:
            warning(f"Unreadable config for image {ref}")
            data = {}
        labels = data.get("Labels") or {}
        artifacts = [a for a in (labels.get("stagebuild.artifacts") or "").split(",") if a]
        return ImageConfig(
            workdir=data.get("WorkingDir") or "/",
            cmd=tuple(data["Cmd"]) if data.get("Cmd") else None,
            base=labels.get("stagebuild.base") or None,
            artifacts=tuple(artifacts),
        )
