"""
CLI entry point for stagebuild
"""
import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from stagebuild.config.settings import BuildConfig, load_env_file
from stagebuild.infra import create_provider
from stagebuild.pipeline.core.environment import split_ref
from stagebuild.pipeline.core.errors import BuildError
from stagebuild.pipeline.core.manifest import Manifest
from stagebuild.pipeline.core.recipe import Recipe, load_recipe, render_recipe
from stagebuild.pipeline.core.runner import PipelineRunner
from stagebuild.pipeline.image import run_image
from stagebuild.pipeline.stages import shared_library_recipe
from stagebuild.utils.logger import error, info, set_debug, success


def _load_recipe_arg(path: Optional[str]) -> Recipe:
    """Load the recipe file, or the built-in shared-library recipe when path is None."""
    if path is None:
        return shared_library_recipe()
    recipe_path = Path(path)
    if not recipe_path.exists():
        error(f"Recipe file not found: {recipe_path}")
        sys.exit(1)
    return load_recipe(recipe_path)


def _apply_overrides(config: BuildConfig, args: argparse.Namespace) -> BuildConfig:
    if getattr(args, "image_store", None):
        config.image_store = args.image_store
    if getattr(args, "cache_dir", None):
        config.cache_dir = args.cache_dir
    if getattr(args, "runs_dir", None):
        config.runs_dir = args.runs_dir
    if getattr(args, "provider", None):
        config.provider = args.provider
    if getattr(args, "timeout", None) is not None:
        if args.timeout < 0:
            raise ValueError("--timeout must be >= 0")
        config.step_timeout = args.timeout
    if getattr(args, "no_cache", False):
        config.use_cache = False
    if getattr(args, "verbose", False):
        config.debug = True
    return config


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagebuild",
        description="Staged image builds: compile in a builder stage, ship only the artifact",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stagebuild build . -t engine:dev                 # built-in shared-library recipe
  stagebuild build . -f Buildfile -t engine:dev    # recipe file (Dockerfile subset)
  stagebuild run engine:dev                        # run the image's default command
  stagebuild run engine:dev -- cat /out/VERSION    # run another command
  stagebuild render                                # print the built-in recipe
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug output")
    parser.add_argument("--env-file", type=str, help="Path to a .env file (default: auto discovery)")
    parser.add_argument("--provider", choices=["local", "docker"], help="Environment provider")
    parser.add_argument("--image-store", type=str, help="Image store directory (local provider)")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    build_cmd = subparsers.add_parser("build", help="Run the staged build")
    build_cmd.add_argument("context", type=str, help="Build context directory")
    build_cmd.add_argument("-f", "--file", type=str, help="Recipe file (default: built-in shared-library recipe)")
    build_cmd.add_argument("-t", "--tag", type=str, required=True, help="Image reference name[:tag]")
    build_cmd.add_argument("--cache-dir", type=str, help="Layer cache directory")
    build_cmd.add_argument("--runs-dir", type=str, help="Build manifest directory")
    build_cmd.add_argument("--timeout", type=float, help="Per-step timeout in seconds (0 = none)")
    build_cmd.add_argument("--no-cache", action="store_true", help="Do not read or write layer cache")
    build_cmd.add_argument("--build-id", type=str, help="Build id (default: random)")

    render_cmd = subparsers.add_parser("render", help="Print a recipe in Dockerfile form")
    render_cmd.add_argument("-f", "--file", type=str, help="Recipe file (default: built-in recipe)")

    stages_cmd = subparsers.add_parser("stages", help="List the stages of a recipe")
    stages_cmd.add_argument("-f", "--file", type=str, help="Recipe file (default: built-in recipe)")

    inspect_cmd = subparsers.add_parser("inspect", help="Summarize a build manifest")
    inspect_cmd.add_argument("manifest", type=str, help="Path to manifest.json")

    run_cmd = subparsers.add_parser("run", help="Run a published image's default command")
    run_cmd.add_argument("--timeout", type=float, help="Timeout in seconds (0 = none)")
    run_cmd.add_argument("image", type=str, help="Image reference name[:tag]")
    run_cmd.add_argument("argv", nargs="*", help="Command overriding the default, after --")

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    load_env_file(args.env_file)
    try:
        config = _apply_overrides(BuildConfig.from_env(), args)
    except ValueError as e:
        error(str(e))
        sys.exit(2)
    set_debug(config.debug)

    try:
        if args.command == "render":
            sys.stdout.write(render_recipe(_load_recipe_arg(args.file)))
            return

        if args.command == "stages":
            recipe = _load_recipe_arg(args.file)
            for idx, stage in enumerate(recipe.stages):
                role = "assembler" if idx == len(recipe.stages) - 1 else "builder"
                info(f"  - {stage.name} ({role}) FROM {stage.base}")
                for step in stage.steps:
                    info(f"      {step.describe()}")
            return

        if args.command == "inspect":
            manifest_path = Path(args.manifest)
            if not manifest_path.exists():
                error(f"Manifest not found: {manifest_path}")
                sys.exit(1)
            data = Manifest(manifest_path).data
            build = data.get("build", {})
            info(f"Build {build.get('build_id')}: {build.get('status', 'unknown')}")
            info(f"States: {' -> '.join(e['state'] for e in data.get('states', []))}")
            for stage in data.get("stages", {}).values():
                info(f"  {stage['name']} ({stage['role']}, {stage['base']}): {stage['status']}")
                for step in stage["steps"]:
                    info(f"      [{step['status']}] {step['instruction']}")
            for artifact in data.get("artifacts", []):
                info(f"  artifact {artifact['stage']}:{artifact['path']} -> {artifact['dest']} "
                     f"({artifact['size']} bytes, {artifact['fingerprint']})")
            if data.get("image"):
                info(f"  image {data['image']['ref']}")
            if data.get("error"):
                error(json.dumps(data["error"], indent=2, ensure_ascii=False))
            return

        provider = create_provider(config)

        if args.command == "run":
            timeout = args.timeout if args.timeout else None
            result = run_image(provider, args.image, args.argv or None, timeout=timeout)
            sys.stdout.write(result.output)
            if result.timed_out:
                error("Command timed out")
                sys.exit(124)
            sys.exit(result.exit_code or 0)

        if args.command == "build":
            recipe = _load_recipe_arg(args.file)
            name, tag = split_ref(args.tag)
            runner = PipelineRunner(provider, config)
            summary = runner.run(recipe, Path(args.context), name=name, tag=tag, build_id=args.build_id)
            for artifact in summary.artifacts:
                info(f"{artifact.dest}: {artifact.size} bytes ({artifact.fingerprint})")
            info(f"Manifest: {summary.manifest_path}")
            success(f"Image {summary.image.ref}")
            return

    except BuildError as e:
        error(str(e))
        sys.exit(1)
    except ValueError as e:
        error(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        error("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
