import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Directory of the loaded .env file (used to resolve relative paths)
_env_file_dir: Path | None = None


def load_env_file(env_path: str | Path | None = None) -> None:
    """
    Load a project-level .env file without overriding variables already set.

    If env_path is None, walk upward from the current working directory and
    load the first .env found.

    Args:
        env_path: .env file path (None = auto discovery)
    """
    global _env_file_dir

    if env_path is None:
        cwd = Path.cwd().resolve()
        for parent in (cwd, *cwd.parents):
            env_file = parent / ".env"
            if env_file.exists():
                load_dotenv(env_file, override=False)
                _env_file_dir = env_file.parent
                return
    else:
        env_path = Path(env_path)
        if env_path.exists():
            load_dotenv(env_path, override=False)
            _env_file_dir = env_path.parent


def resolve_relative_path(path: str | Path) -> Path:
    """
    Resolve a configured path.

    `~` is expanded; relative paths are taken relative to the directory of
    the loaded .env file, or the current working directory if none was loaded.
    """
    path = Path(path).expanduser()
    if path.is_absolute():
        return path
    if _env_file_dir:
        return (_env_file_dir / path).resolve()
    return path.resolve()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


@dataclass
class BuildConfig:
    # Where base images and published images live (local provider)
    image_store: str = "~/.stagebuild/images"
    # Layer cache root; entries are append-only
    cache_dir: str = "~/.stagebuild/cache"
    # Build manifests go to runs/<build_id>/manifest.json
    runs_dir: str = "runs"
    # "local" or "docker"
    provider: str = "local"
    docker_bin: str = "docker"
    # Per RUN step, in seconds; 0 disables the limit
    step_timeout: float = 3600.0
    use_cache: bool = True
    debug: bool = False

    def __post_init__(self):
        if self.provider not in ("local", "docker"):
            raise ValueError(f"Unknown provider: {self.provider!r} (expected 'local' or 'docker')")
        if self.step_timeout < 0:
            raise ValueError(f"step_timeout must be >= 0, got {self.step_timeout}")

    @classmethod
    def from_env(cls) -> "BuildConfig":
        """Build a config from STAGEBUILD_* environment variables."""
        defaults = cls()
        return cls(
            image_store=os.getenv("STAGEBUILD_IMAGE_STORE") or defaults.image_store,
            cache_dir=os.getenv("STAGEBUILD_CACHE_DIR") or defaults.cache_dir,
            runs_dir=os.getenv("STAGEBUILD_RUNS_DIR") or defaults.runs_dir,
            provider=os.getenv("STAGEBUILD_PROVIDER") or defaults.provider,
            docker_bin=os.getenv("STAGEBUILD_DOCKER") or defaults.docker_bin,
            step_timeout=_env_float("STAGEBUILD_STEP_TIMEOUT", defaults.step_timeout),
            use_cache=not _env_bool("STAGEBUILD_NO_CACHE", False),
            debug=_env_bool("STAGEBUILD_DEBUG", False),
        )

    @property
    def timeout(self) -> float | None:
        """Effective step timeout for subprocess calls (None = unlimited)."""
        return self.step_timeout or None

    def image_store_path(self) -> Path:
        return resolve_relative_path(self.image_store)

    def cache_path(self) -> Path:
        return resolve_relative_path(self.cache_dir)

    def runs_path(self) -> Path:
        return resolve_relative_path(self.runs_dir)
