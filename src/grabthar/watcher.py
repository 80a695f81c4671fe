"""Watcher: keeps a package's live dist-tag installed and hands out its location.

A watcher runs one poller per dist-tag. Each poll cycle fetches the package
document, resolves the version to run, installs it into a version-scoped
directory and publishes the resulting :class:`ModuleDetails`. Callers never
wait on the network once the first cycle has succeeded; they get the most
recent good result, or a local installation when nothing live is available.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .cleanup import CleanupTask
from .common.cache import ExternalCache, LRUCache
from .common.logging_utils import Timer, extra_context, is_debug_enabled
from .config import WatcherConfig
from .constants import Constants, DistTag
from .exceptions import AmbiguousTag, LiveModuleUnavailable, ModuleLoadError
from .fallback import get_fallback
from .install.lock import LockService
from .install.pipeline import (
    Installer,
    cdn_host_label,
    live_modules_root,
    module_prefix,
    owned_entry_pattern,
    package_directory,
)
from .loader import ModuleLoader, PythonModuleLoader, resolve_dependency_dir
from .models import DependencyDetails, ModuleDetails
from .poller import Poller
from .registry.client import RegistryClient
from .versioning.models import StabilityMap
from .versioning.resolver import resolve

PathLike = Union[str, Path]
ErrorHandler = Callable[[BaseException], None]


class Watcher:
    """Polls the registry for ``name`` and keeps the live version installed."""

    def __init__(
        self,
        name: str,
        tags: Sequence[str] = (DistTag.LATEST,),
        period: float = Constants.NPM_POLL_INTERVAL,
        on_error: Optional[ErrorHandler] = None,
        dependencies: bool = False,
        child_modules: Optional[Iterable[str]] = None,
        registry: str = Constants.NPM_REGISTRY,
        cdn_registry: Optional[str] = None,
        cache: Optional[ExternalCache] = None,
        fallback: bool = True,
        fallback_root: Optional[PathLike] = None,
        live_modules_dir: Optional[PathLike] = None,
        logger: Optional[logging.Logger] = None,
        loader: Optional[ModuleLoader] = None,
        clean: bool = True,
        registry_client: Optional[RegistryClient] = None,
        lock_service: Optional[LockService] = None,
        max_interval: Optional[float] = None,
        timeout: float = Constants.REQUEST_TIMEOUT,
    ):
        """Initialize the watcher. Nothing runs until ``start()``.

        Args:
            name: Package name, optionally scoped (``@scope/name``).
            tags: Dist-tags to follow, one poller each.
            period: Seconds between successful poll cycles.
            on_error: Called with every poll-cycle error.
            dependencies: Install each version's dependencies next to it.
            child_modules: Restrict dependency installation to these names.
            registry: Primary registry URL.
            cdn_registry: Optional CDN mirror tried before the registry.
            cache: Optional external cache for package documents.
            fallback: Use a local ``node_modules`` installation when polling fails.
            fallback_root: Where the fallback lookup starts (default: cwd).
            live_modules_dir: Root for installations (default: ``~/__live_modules__``).
            logger: Logger for events; defaults to the module logger.
            loader: Loads code and data for ``import_module``/``import_dependency``.
            clean: Periodically remove old installations.
            registry_client: Shared registry client; created (and owned) when omitted.
            lock_service: Shared lock service; created when omitted.
            max_interval: Backoff cap per poller.
            timeout: HTTP timeout when the registry client is created here.
        """
        if not tags:
            raise ValueError("at least one tag is required")
        self.name = name
        self.tags: List[str] = list(dict.fromkeys(tags))
        self._on_error = on_error
        self._dependencies = dependencies
        self._child_modules = list(child_modules) if child_modules is not None else None
        self._registry = registry
        self._cdn_registry = cdn_registry
        self._fallback = fallback
        self._fallback_root = fallback_root
        self._logger = logger or logging.getLogger(__name__)

        self._owns_registry_client = registry_client is None
        self._registry_client = registry_client or RegistryClient(cache=cache, logger=self._logger, timeout=timeout)
        self._installer = Installer(self._registry_client, lock_service=lock_service, logger=self._logger)
        self._stability = StabilityMap()
        self._loader: ModuleLoader = loader or PythonModuleLoader()
        self._reads: LRUCache[str] = LRUCache(Constants.READ_CACHE_SIZE)
        self._live_root = live_modules_root(live_modules_dir)

        self._pollers: Dict[str, Poller[ModuleDetails]] = {
            tag: Poller(
                self._handler_for(tag),
                period,
                on_error=self._report,
                max_interval=max_interval,
                logger=self._logger,
            )
            for tag in self.tags
        }

        self._cancelled = False
        self._cleanup: Optional[CleanupTask] = None
        if clean:
            install_root = self._install_root()
            self._cleanup = CleanupTask(
                [install_root, install_root / Constants.STAGING_DIR_NAME],
                on_error=self._on_error,
                logger=self._logger,
                pattern=owned_entry_pattern(name),
            )

    @classmethod
    def from_config(cls, config: WatcherConfig, **kwargs: Any) -> "Watcher":
        """Build a watcher from a :class:`WatcherConfig`; ``kwargs`` pass through."""
        lock_service = kwargs.pop("lock_service", None) or LockService(stale_after=config.lock_stale_after)
        return cls(
            config.name,
            tags=config.tags,
            period=config.period,
            dependencies=config.dependencies,
            child_modules=config.child_modules,
            registry=config.registry,
            cdn_registry=config.cdn_registry,
            fallback=config.fallback,
            fallback_root=config.fallback_root,
            live_modules_dir=config.live_modules_dir,
            clean=config.clean,
            lock_service=lock_service,
            max_interval=config.max_interval,
            timeout=config.timeout,
            **kwargs,
        )

    @property
    def stability(self) -> StabilityMap:
        return self._stability

    @property
    def live_root(self) -> Path:
        return self._live_root

    def _install_root(self) -> Path:
        if self._cdn_registry:
            return self._live_root / cdn_host_label(self._cdn_registry)
        return self._live_root

    def start(self) -> "Watcher":
        """Start every poller (and the cleanup task) on the running loop."""
        self._cancelled = False
        for poller in self._pollers.values():
            poller.start()
        if self._cleanup is not None:
            self._cleanup.start()
        return self

    def _handler_for(self, tag: str) -> Callable[[], Any]:
        async def handler() -> ModuleDetails:
            return await self._poll_cycle(tag)

        return handler

    async def _poll_cycle(self, tag: str) -> ModuleDetails:
        with Timer() as timer:
            metadata = await self._registry_client.fetch_info(
                self.name, registry=self._registry, cdn_registry=self._cdn_registry
            )
            resolved = resolve(metadata, tag, self._stability)
            prefix = module_prefix(self._live_root, self.name, resolved.version, self._cdn_registry)
            await self._installer.install(
                self.name,
                resolved.version,
                metadata,
                prefix,
                dependencies=self._dependencies,
                child_modules=self._child_modules,
                cdn_registry=self._cdn_registry,
                registry=self._registry,
            )

        if self._cleanup is not None:
            self._cleanup.save(prefix)

        node_modules_path = prefix / Constants.NODE_MODULES
        # Reported whether or not the dependencies were installed alongside.
        dependencies: Dict[str, DependencyDetails] = {}
        allowed = set(self._child_modules) if self._child_modules is not None else None
        version_info = metadata.versions[resolved.version]
        for dependency, dependency_version in version_info.dependencies.items():
            if allowed is not None and dependency not in allowed:
                continue
            dependencies[dependency] = DependencyDetails(
                version=dependency_version,
                path=package_directory(prefix, dependency),
            )

        details = ModuleDetails(
            node_modules_path=node_modules_path,
            module_path=package_directory(prefix, self.name),
            version=resolved.version,
            previous_version=resolved.previous_version,
            dependencies=MappingProxyType(dependencies),
        )
        if is_debug_enabled(self._logger):
            self._logger.debug(
                "Poll cycle for %s@%s resolved %s",
                self.name,
                tag,
                resolved.version,
                extra=extra_context(
                    event="poll_success",
                    component="watcher",
                    package=self.name,
                    tag=tag,
                    version=resolved.version,
                    duration_ms=timer.duration_ms(),
                ),
            )
        return details

    def _report(self, exc: BaseException) -> None:
        self._logger.warning(
            "Live module poll for %s failed: %s",
            self.name,
            exc,
            extra=extra_context(event="watcher_error", component="watcher", package=self.name),
        )
        if self._on_error is not None:
            self._on_error(exc)

    def _effective_tag(self, tag: Optional[str]) -> str:
        if tag is not None:
            if tag not in self._pollers:
                raise AmbiguousTag(f"{self.name} is not watching tag {tag!r}; watching {self.tags}")
            return tag
        if len(self.tags) == 1:
            return self.tags[0]
        if DistTag.LATEST in self._pollers:
            return DistTag.LATEST
        raise AmbiguousTag(f"Please specify a tag for {self.name}: one of {self.tags}")

    async def get(self, tag: Optional[str] = None) -> ModuleDetails:
        """Details of the live module for ``tag``.

        Raises:
            AmbiguousTag: ``tag`` is needed or not watched.
            LiveModuleUnavailable: Polling failed and so did the local fallback.
        """
        effective_tag = self._effective_tag(tag)
        poller = self._pollers[effective_tag]
        if not poller.running and not self._cancelled:
            poller.start()
        try:
            return await poller.result()
        except Exception as live_error:  # pylint: disable=broad-exception-caught
            if not self._fallback:
                raise
            try:
                details = await asyncio.to_thread(get_fallback, self.name, self._fallback_root)
            except Exception as fallback_error:  # pylint: disable=broad-exception-caught
                raise LiveModuleUnavailable(live_error, fallback_error) from live_error
            self._logger.error(
                "Serving local fallback %s@%s after live module failure: %s",
                self.name,
                details.version,
                live_error,
                extra=extra_context(
                    event="fallback_used",
                    component="watcher",
                    package=self.name,
                    tag=effective_tag,
                    version=details.version,
                ),
            )
            return details

    async def import_module(self, path: Optional[str] = None, tag: Optional[str] = None) -> Any:
        """Load ``path`` (or the module root) from the live module."""
        details = await self.get(tag)
        target = details.module_path / path if path else details.module_path
        return await asyncio.to_thread(self._loader.load, target)

    async def import_dependency(self, dependency: str, path: Optional[str] = None, tag: Optional[str] = None) -> Any:
        """Load ``path`` (or the package root) from one of the module's dependencies.

        Raises:
            ModuleLoadError: The dependency is not installed anywhere visible.
        """
        details = await self.get(tag)
        recorded = details.dependencies.get(dependency)
        dependency_dir = await asyncio.to_thread(
            resolve_dependency_dir,
            details.module_path,
            dependency,
            recorded.path if recorded is not None else None,
        )
        target = dependency_dir / path if path else dependency_dir
        return await asyncio.to_thread(self._loader.load, target)

    async def read(self, path: str, tag: Optional[str] = None) -> str:
        """Text of a file inside the live module; recent reads are cached."""
        details = await self.get(tag)
        target = (details.module_path / path).resolve()
        key = str(target)
        cached = self._reads.get(key)
        if cached is not None:
            return cached
        try:
            text = await asyncio.to_thread(target.read_text, encoding="utf-8")
        except OSError as exc:
            raise ModuleLoadError(f"Can not read {target}: {exc}") from exc
        self._reads.set(key, text)
        return text

    def mark_stable(self, version: str) -> None:
        """Allow ``version`` again; effective from the next poll cycle."""
        self._stability.mark_stable(version)

    def mark_unstable(self, version: str) -> None:
        """Stop using ``version``; pollers roll back on their next cycle."""
        self._stability.mark_unstable(version)
        self._logger.info(
            "Marked %s@%s unstable",
            self.name,
            version,
            extra=extra_context(event="version_unstable", component="watcher", package=self.name, version=version),
        )

    def cancel(self) -> None:
        """Stop every poller and the cleanup task."""
        self._cancelled = True
        for poller in self._pollers.values():
            poller.stop()
        if self._cleanup is not None:
            self._cleanup.cancel()

    async def close(self) -> None:
        """Cancel, let running poll cycles finish, then release the registry session when owned."""
        self.cancel()
        await asyncio.gather(*(poller.join() for poller in self._pollers.values()))
        if self._owns_registry_client:
            await self._registry_client.close()

    async def __aenter__(self) -> "Watcher":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def poll(name: str, **kwargs: Any) -> Watcher:
    """Create a watcher for ``name`` and start it on the running loop."""
    return Watcher(name, **kwargs).start()
