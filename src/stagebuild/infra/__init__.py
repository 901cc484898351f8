"""
Environment providers.
"""
from stagebuild.config.settings import BuildConfig
from stagebuild.pipeline.core.environment import Provisionable

from .docker import DockerProvider
from .local import LocalProvider


def create_provider(config: BuildConfig) -> Provisionable:
    """Instantiate the provider selected by config.provider."""
    if config.provider == "docker":
        return DockerProvider(docker_bin=config.docker_bin)
    return LocalProvider(config.image_store_path(), config.cache_path())


__all__ = ["DockerProvider", "LocalProvider", "create_provider"]
