"""
stagebuild: staged container-image builds with artifact handoff.

Pipeline:
    Recipe (FROM ... AS builder / FROM runtime)
      ↓
    Builder stage: provision toolchain, copy manifests, copy source, build
      ↓
    Artifact transfer (only the named file crosses)
      ↓
    Assembler stage: provision slim runtime, place artifact, WORKDIR + CMD
      ↓
    Published image
"""

from .config.settings import BuildConfig, load_env_file

__version__ = "0.1.0"

__all__ = ["BuildConfig", "load_env_file"]
