"""Command line interface: inspect, install or watch a live package."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, List, Optional

from .common.logging_utils import configure_logging, extra_context, is_debug_enabled
from .config import WatcherConfig
from .constants import Constants, DistTag, ExitCodes
from .exceptions import (
    GrabtharError,
    InstallError,
    ModuleLoadError,
    RegistryError,
    VersionResolutionError,
)
from .install.pipeline import Installer, live_modules_root, module_prefix
from .registry.client import RegistryClient
from .watcher import Watcher

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="grabthar",
        description="Keep a registry package's live dist-tag installed locally",
    )
    parser.add_argument("--log-level",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        type=str,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        default=None)
    parser.add_argument("--registry",
                        dest="REGISTRY",
                        help=f"Primary registry URL (default: {Constants.NPM_REGISTRY})",
                        type=str)
    parser.add_argument("--cdn-registry",
                        dest="CDN_REGISTRY",
                        help="CDN mirror tried before the registry",
                        type=str)
    parser.add_argument("--config",
                        dest="CONFIG",
                        help="YAML config file (optional 'grabthar:' section)",
                        type=str)
    parser.add_argument("--live-modules-dir",
                        dest="LIVE_MODULES_DIR",
                        help="Installation root (default: ~/__live_modules__)",
                        type=str)

    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    info = subparsers.add_parser("info", help="Print the package's dist-tags and versions")
    info.add_argument("NAME", help="Package name")

    install = subparsers.add_parser("install", help="Install one version into the live modules directory")
    install.add_argument("NAME", help="Package name")
    install.add_argument("VERSION", help="Exact version")
    install.add_argument("--dependencies",
                         dest="DEPENDENCIES",
                         help="Also install the version's dependencies",
                         action="store_true")

    watch = subparsers.add_parser("watch", help="Poll a dist-tag and keep it installed until interrupted")
    watch.add_argument("NAME", help="Package name")
    watch.add_argument("--tag",
                       dest="TAGS",
                       help=f"Dist-tag to follow; repeatable (default: {DistTag.LATEST})",
                       action="append")
    watch.add_argument("--period",
                       dest="PERIOD",
                       help=f"Seconds between polls (default: {Constants.NPM_POLL_INTERVAL})",
                       type=float)
    watch.add_argument("--dependencies",
                       dest="DEPENDENCIES",
                       help="Also install each version's dependencies",
                       action="store_true")

    return parser.parse_args(argv)


def _setup_logging(args: Any) -> None:
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()
    configure_logging()


async def _info(config: WatcherConfig) -> int:
    client = RegistryClient(timeout=config.timeout)
    try:
        metadata = await client.fetch_info(config.name, registry=config.registry, cdn_registry=config.cdn_registry)
    finally:
        await client.close()
    print(json.dumps(
        {
            "name": metadata.name,
            "distTags": dict(metadata.dist_tags),
            "versions": sorted(metadata.versions),
            "fetchedFromCDNRegistry": metadata.fetched_from_cdn,
        },
        indent=2,
    ))
    return ExitCodes.SUCCESS.value


async def _install(config: WatcherConfig, version: str) -> int:
    client = RegistryClient(timeout=config.timeout)
    try:
        metadata = await client.fetch_info(config.name, registry=config.registry, cdn_registry=config.cdn_registry)
        prefix = module_prefix(live_modules_root(config.live_modules_dir), config.name, version, config.cdn_registry)
        await Installer(client).install(
            config.name,
            version,
            metadata,
            prefix,
            dependencies=config.dependencies,
            child_modules=config.child_modules,
            cdn_registry=config.cdn_registry,
            registry=config.registry,
        )
    finally:
        await client.close()
    print(prefix)
    return ExitCodes.SUCCESS.value


async def _watch(config: WatcherConfig) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: rely on KeyboardInterrupt
            pass

    async with Watcher.from_config(config) as watcher:
        for tag in watcher.tags:
            details = await watcher.get(tag)
            logger.info(
                "Watching %s@%s: %s at %s",
                config.name,
                tag,
                details.version,
                details.module_path,
                extra=extra_context(event="watch_ready", component="cli", package=config.name, tag=tag),
            )
        await stop_event.wait()
        logger.info("Shutdown signal received, stopping...")
    return ExitCodes.SUCCESS.value


def _exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, RegistryError):
        return ExitCodes.CONNECTION_ERROR.value
    if isinstance(exc, VersionResolutionError):
        return ExitCodes.RESOLUTION_ERROR.value
    if isinstance(exc, (InstallError, ModuleLoadError)):
        return ExitCodes.INSTALL_ERROR.value
    if isinstance(exc, GrabtharError):
        return ExitCodes.RESOLUTION_ERROR.value
    return ExitCodes.FILE_ERROR.value


def run(argv: Optional[List[str]] = None) -> int:
    """Run the command line and return the exit code."""
    args = parse_args(argv)
    _setup_logging(args)
    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    try:
        config = WatcherConfig.from_args(args)
        if args.COMMAND == "info":
            return asyncio.run(_info(config))
        if args.COMMAND == "install":
            return asyncio.run(_install(config, args.VERSION))
        return asyncio.run(_watch(config))
    except KeyboardInterrupt:
        return ExitCodes.SUCCESS.value
    except (OSError, ValueError) as exc:
        logger.error("Configuration error: %s", exc)
        return ExitCodes.FILE_ERROR.value
    except GrabtharError as exc:
        logger.error("%s", exc)
        return _exit_code_for(exc)


def main() -> None:
    """Console script entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
