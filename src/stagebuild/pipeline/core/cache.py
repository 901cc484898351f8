"""
Layer cache: skip COPY/RUN steps whose chained cache key already has a committed layer.

Entries are append-only. Each invocation computes its own keys, so concurrent
builds never contend beyond racing to add the same entry (first one wins).
"""
from typing import Optional

from stagebuild.pipeline.core.environment import Environment, Provisionable
from stagebuild.pipeline.core.fingerprints import short_key
from stagebuild.utils.logger import debug, warning


class LayerCache:
    """Thin policy layer over a provider's layer storage."""

    def __init__(self, provider: Provisionable, *, enabled: bool = True):
        self.provider = provider
        self.enabled = enabled
        self.hits = 0
        self.misses = 0

    def lookup(self, key: Optional[str]) -> bool:
        if not self.enabled or key is None:
            return False
        found = self.provider.has_layer(key)
        if found:
            self.hits += 1
            debug(f"cache hit {short_key(key)}")
        else:
            self.misses += 1
        return found

    def store(self, env: Environment, key: Optional[str]) -> None:
        if not self.enabled or key is None:
            return
        try:
            self.provider.commit_layer(env, key)
        except OSError as e:
            # Cache write failures are not build failures
            warning(f"Could not store layer {short_key(key)}: {e}")
