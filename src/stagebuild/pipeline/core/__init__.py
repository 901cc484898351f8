"""
Pipeline core framework.
"""
from .types import (
    Artifact,
    BuildSummary,
    CmdStep,
    CopyStep,
    ErrorInfo,
    ExecResult,
    Image,
    ImageConfig,
    PipelineState,
    RunStep,
    Stage,
    WorkdirStep,
)
from .errors import (
    ArtifactMissing,
    BuildError,
    BuildFailed,
    EnvironmentUnavailable,
    RecipeError,
    SourceNotFound,
    StageNotYetBuilt,
)
from .environment import Environment, Provisionable
from .recipe import Recipe, load_recipe, parse_recipe, render_recipe
from .manifest import Manifest, now_iso
from .fingerprints import hash_file, hash_json, hash_path, step_cache_key
from .atomic import atomic_write, atomic_copytree
from .transfer import ArtifactTransfer
from .runner import PipelineRunner

__all__ = [
    "Artifact",
    "ArtifactMissing",
    "ArtifactTransfer",
    "BuildError",
    "BuildFailed",
    "BuildSummary",
    "CmdStep",
    "CopyStep",
    "Environment",
    "EnvironmentUnavailable",
    "ErrorInfo",
    "ExecResult",
    "Image",
    "ImageConfig",
    "Manifest",
    "PipelineRunner",
    "PipelineState",
    "Provisionable",
    "Recipe",
    "RecipeError",
    "RunStep",
    "SourceNotFound",
    "Stage",
    "StageNotYetBuilt",
    "WorkdirStep",
    "atomic_copytree",
    "atomic_write",
    "hash_file",
    "hash_json",
    "hash_path",
    "load_recipe",
    "now_iso",
    "parse_recipe",
    "render_recipe",
    "step_cache_key",
]
