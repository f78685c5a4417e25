#!/usr/bin/env python3

import argparse
import dataclasses
import json
import logging
import os
import shutil
import sys
from typing import Any, Dict, Optional

from build_orchestrator import build
from config import (
    DEFAULT_DEFINITION_FILE,
    DEFAULT_REPOSITORY,
    DEFAULT_TAG,
    BuildConfig,
    BuildResult,
    default_logger,
)
from errors import ConfigurationError
from utils import can_run, human_size

logger = logging.getLogger("layered_img_build.cli")

# BuildConfig fields that may come from the environment, and how to parse them
ENV_OVERRIDES = {
    'LAYERIMG_REPOSITORY': ('repository', str),
    'LAYERIMG_MAX_WORKERS': ('max_workers', int),
    'LAYERIMG_TEST_WORKERS': ('test_workers', int),
    'LAYERIMG_EXEC_TIMEOUT': ('exec_timeout', int),
    'LAYERIMG_DOCKER_CONFIG': ('docker_config', str),
}

EXAMPLE_DEFINITION = """\
# Base image: either `image: <ref>` or `context: <dir>` with a Dockerfile
base:
  context: base

layers:
  - name: tools
    # context defaults to layers/<name>; its Dockerfile starts with
    #   ARG base
    #   FROM ${base}
    tests:
      - desc: curl is installed
        command: ["curl", "--version"]
        expect:
          stdout_contains: curl

  - name: app
    dependencies: [tools]
    tests:
      - desc: app entrypoint exists
        command: test -x /usr/local/bin/app
"""

EXAMPLE_BASE_DOCKERFILE = """\
FROM ubuntu:22.04
RUN apt-get update && apt-get install -y --no-install-recommends ca-certificates \\
    && rm -rf /var/lib/apt/lists/*
"""

EXAMPLE_LAYER_DOCKERFILES = {
    'tools': """\
ARG base
FROM ${base}
RUN apt-get update && apt-get install -y --no-install-recommends curl \\
    && rm -rf /var/lib/apt/lists/*
""",
    'app': """\
ARG base
FROM ${base}
RUN printf '#!/bin/sh\\necho hello\\n' > /usr/local/bin/app && chmod +x /usr/local/bin/app
""",
}


def load_build_config(config_path: Optional[str] = None, **overrides) -> BuildConfig:
    """Build the BuildConfig from a JSON file, then LAYERIMG_* env vars, then explicit overrides"""
    fields = {f.name for f in dataclasses.fields(BuildConfig)} - {'logger'}
    values: Dict[str, Any] = {}

    if config_path:
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"cannot read build config {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"build config {config_path} must be a JSON object")
        unknown = sorted(set(data) - fields)
        if unknown:
            logger.warning("Ignoring unknown build config keys: %s", ', '.join(unknown))
        values.update({k: v for k, v in data.items() if k in fields})

    for env_var, (field_name, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None or raw == '':
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError as e:
            raise ConfigurationError(f"{env_var}={raw!r} is not valid: {e}") from e

    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return BuildConfig(logger=default_logger(), **values)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid build config: {e}") from e


def check_docker_access() -> bool:
    """Docker daemon reachable directly or through non-interactive sudo"""
    if not shutil.which('docker'):
        return False
    if can_run(['docker', 'info']):
        return True
    return bool(shutil.which('sudo')) and can_run(['sudo', '-n', 'docker', 'info'])


def log_build_result(result: BuildResult):
    if result.base_image is not None:
        logger.info("base layer: %s (%s)", result.base_image.ref, human_size(result.base_image.size))
    for layer in result.layers:
        logger.info("%s: %s (%s)%s", layer.name, layer.ref, human_size(layer.size),
                    " [cached]" if layer.cached else "")
    for name, reason in result.failed.items():
        logger.error("%s: failed: %s", name, reason)
    for name in result.skipped:
        logger.warning("%s: skipped", name)
    if result.final_image is not None:
        logger.info("final image: %s (%s)", result.final_image.ref, result.final_image.image_id)


def save_test_xml_output(result: BuildResult, path: str):
    """Write the JUnit XML report; a failed build still writes what was tested"""
    if result.report is None:
        return
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(result.report.to_junit_xml())
    logger.info("Test report written: %s (%d test(s), %d failure(s))", path,
                result.report.total, result.report.failures)


def cmd_build(args):
    """Build command handler"""
    if args.repository is None:
        logger.warning("No --repository given, using %r. Layer images stay local to this host "
                       "unless the repository names a registry.", DEFAULT_REPOSITORY)

    if not args.skip_preflight and not check_docker_access():
        logger.error("❌ Docker daemon is not accessible.")
        logger.error("   - Tried: 'docker info' and 'sudo -n docker info'")
        logger.error("   - Hints: add your user to the 'docker' group, or run with sudo where permitted.")
        logger.error("   - Set NO_SUDO=1 to suppress sudo attempts.")
        return 1

    config = load_build_config(
        args.config,
        repository=args.repository,
        max_workers=args.workers,
        keep_test_containers=args.keep_test_containers or None,
    )

    logger.info("🚀 Building %s from %s", args.tag, os.path.abspath(args.context))
    result = build(config, args.context, args.file, args.tag)

    log_build_result(result)
    if args.output_test_xml:
        save_test_xml_output(result, args.output_test_xml)

    if not result.ok:
        logger.error("💥 Build failed: %s", result.error)
        return 1
    logger.info("🎉 Build completed successfully: %s", args.tag)
    return 0


def cmd_init(args):
    """Initialize command handler - create an example build definition"""
    target = os.path.abspath(args.output or '.')
    definition = os.path.join(target, DEFAULT_DEFINITION_FILE)
    if os.path.exists(definition) and not args.force:
        logger.error("%s already exists (use --force to overwrite)", definition)
        return 1

    files = {DEFAULT_DEFINITION_FILE: EXAMPLE_DEFINITION,
             os.path.join('base', 'Dockerfile'): EXAMPLE_BASE_DOCKERFILE}
    for name, content in EXAMPLE_LAYER_DOCKERFILES.items():
        files[os.path.join('layers', name, 'Dockerfile')] = content

    for rel, content in files.items():
        path = os.path.join(target, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
    logger.info("Example build definition created: %s", definition)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Layered Docker image builder with content-addressed layer caching",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s build . -f layers.yaml -t my-image:latest -r registry.example.com/team/work
  %(prog)s build . --output-test-xml report.xml
  %(prog)s init --output my-project
        """
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    build_parser = subparsers.add_parser('build', help='Build the layered image')
    build_parser.add_argument(
        'context',
        nargs='?',
        default='.',
        help='Build context directory (default: current directory)'
    )
    build_parser.add_argument(
        '-f', '--file',
        default=DEFAULT_DEFINITION_FILE,
        help=f'Build definition, relative to the context (default: {DEFAULT_DEFINITION_FILE})'
    )
    build_parser.add_argument(
        '-t', '--tag',
        default=DEFAULT_TAG,
        help=f'Tag of the final image (default: {DEFAULT_TAG})'
    )
    build_parser.add_argument(
        '-r', '--repository',
        help=f'Working repository for layer images (default: {DEFAULT_REPOSITORY})'
    )
    build_parser.add_argument(
        '--output-test-xml',
        help='Write layer test results to this file as JUnit XML'
    )
    build_parser.add_argument(
        '--workers',
        type=int,
        help='Number of layers built concurrently'
    )
    build_parser.add_argument(
        '--config',
        help='Path to a JSON build configuration file'
    )
    build_parser.add_argument(
        '--keep-test-containers',
        action='store_true',
        help='Do not remove test containers (debugging)'
    )
    build_parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Do not check Docker daemon access before building'
    )
    build_parser.set_defaults(func=cmd_build)

    init_parser = subparsers.add_parser('init', help='Create an example build definition')
    init_parser.add_argument(
        '--output', '-o',
        help='Target directory (default: current directory)'
    )
    init_parser.add_argument(
        '--force',
        action='store_true',
        help='Overwrite an existing definition'
    )
    init_parser.set_defaults(func=cmd_init)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s',
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 130
    except ConfigurationError as e:
        logger.error("Invalid build definition: %s", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
