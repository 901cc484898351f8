"""
Fingerprints and layer cache keys: deterministic hashes.
"""
import hashlib
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from stagebuild.pipeline.core.types import CopyStep, RunStep, Stage, Step


def _remove_none_and_empty(obj: Any) -> Any:
    """Recursively drop None values and empty dicts/lists."""
    if isinstance(obj, dict):
        result = {}
        for k, v in obj.items():
            v_cleaned = _remove_none_and_empty(v)
            if v_cleaned is not None and v_cleaned != {} and v_cleaned != []:
                result[k] = v_cleaned
        return result
    elif isinstance(obj, (list, tuple)):
        result = []
        for item in obj:
            item_cleaned = _remove_none_and_empty(item)
            if item_cleaned is not None and item_cleaned != {} and item_cleaned != []:
                result.append(item_cleaned)
        return result
    else:
        return obj


def canonicalize_json(obj: Any) -> str:
    """
    Canonical JSON: sorted keys, no nulls, compact separators.
    """
    cleaned = _remove_none_and_empty(obj)
    return json.dumps(
        cleaned,
        sort_keys=True,
        ensure_ascii=False,
        separators=(',', ':'),
        allow_nan=False,
    )


def hash_string(s: str) -> str:
    return hashlib.sha256(s.encode('utf-8')).hexdigest()


def hash_file(path: Path) -> str:
    """
    SHA256 of a file's content.

    Returns:
        "sha256:..." formatted hash
    """
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def _is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & 0o111)


def hash_directory(path: Path) -> str:
    """
    SHA256 of a directory tree.

    Entries are visited in sorted relative-path order. Each one contributes
    its relative path and kind; files also contribute their executable bit
    and content. A chmod +x or a new empty directory changes the result.
    """
    h = hashlib.sha256()

    for entry in sorted(path.rglob("*")):
        rel_path = entry.relative_to(path).as_posix()
        h.update(rel_path.encode("utf-8"))
        h.update(b"\0")
        if entry.is_dir():
            h.update(b"d\0")
            continue
        if not entry.is_file():
            continue
        h.update(b"x\0" if _is_executable(entry) else b"f\0")
        with entry.open("rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        h.update(b"\0")

    return f"sha256:{h.hexdigest()}"


def hash_path(path: Path) -> str:
    """Hash a file or a directory. A file's executable bit is part of its hash."""
    if path.is_dir():
        return hash_directory(path)
    if _is_executable(path):
        return hash_json({"file": hash_file(path), "executable": True})
    return hash_file(path)


def hash_json(obj: Any) -> str:
    """Hash of the canonical JSON form of obj ("sha256:..." formatted)."""
    return f"sha256:{hash_string(canonicalize_json(obj))}"


def fingerprint_recipe(stages: List[Stage]) -> str:
    """Stable fingerprint of a whole recipe."""
    return hash_json([
        {"name": s.name, "base": s.base, "steps": [step.describe() for step in s.steps]}
        for s in stages
    ])


def base_layer_key(base_ref: str) -> str:
    """Cache key of a stage's starting point: only the base image matters."""
    return hash_json({"base": base_ref})


def step_cache_key(
    parent_key: str,
    step: Step,
    workdir: str,
    inputs: Optional[Dict[str, str]] = None,
) -> str:
    """
    Chained cache key of one layer-producing step.

    The key depends on the parent layer, the instruction, the working
    directory and, for COPY, the fingerprints of every copied input. Stage
    names are not part of the key, so identical stages share layers.

    Args:
        parent_key: key of the previous layer (or base_layer_key)
        step: the COPY or RUN step
        workdir: working directory in effect for the step
        inputs: name -> fingerprint of copied inputs (host files or artifacts)

    Returns:
        "sha256:..." formatted key
    """
    if isinstance(step, RunStep):
        descriptor: Dict[str, Any] = {"run": list(step.argv)}
    elif isinstance(step, CopyStep):
        descriptor = {"copy": list(step.sources), "dest": step.dest, "from": step.from_stage}
    else:
        raise TypeError(f"Step does not produce a layer: {step!r}")

    return hash_json({
        "parent": parent_key,
        "step": descriptor,
        "workdir": workdir,
        "inputs": dict(sorted((inputs or {}).items())),
    })


def short_key(key: str, n: int = 12) -> str:
    """Shorten a "sha256:..." key for logs and tags."""
    return key.split(":", 1)[-1][:n]
