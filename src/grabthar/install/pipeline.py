"""Install pipeline: place a published tarball into a version-scoped directory.

Layout produced::

    {live_root}/[{cdn host}/]{sanitized name}_{version}/node_modules/{name, ...dependencies}

Destinations are version-qualified, so an existing manifest means the package
is fully installed and the call is a no-op. Placement happens under the
directory lock: download into a staging directory next to the destination,
extract, then move into place with a single rename.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
import tarfile
import uuid
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Union

from yarl import URL

from ..common.fs import home_directory, remove_tree, sanitize
from ..common.http_client import HttpClient
from ..common.logging_utils import Timer, extra_context, safe_url
from ..common.memo import AsyncMemo, stable_key
from ..constants import Constants
from ..exceptions import InstallError, InvalidDependencyVersion
from ..registry.client import RegistryClient
from ..registry.models import PackageMetadata
from ..versioning.resolver import is_strict_semver
from .lock import LockService

PathLike = Union[str, Path]


def live_modules_root(base: Optional[PathLike] = None) -> Path:
    """Root of every live module directory."""
    return Path(base) if base is not None else home_directory() / Constants.LIVE_MODULES_DIR_NAME


def cdn_host_label(cdn_registry: str) -> str:
    """Directory label separating installs served by a CDN mirror."""
    return sanitize(URL(cdn_registry).host or cdn_registry)


def module_prefix(root: PathLike, name: str, version: str, cdn_registry: Optional[str] = None) -> Path:
    """Version-scoped installation root for ``name@version``."""
    base = Path(root)
    if cdn_registry:
        base = base / cdn_host_label(cdn_registry)
    return base / f"{sanitize(name)}_{version}"


def package_directory(prefix: PathLike, name: str) -> Path:
    """Where ``name`` lives inside a prefix (scoped names nest one level)."""
    return Path(prefix).joinpath(Constants.NODE_MODULES, *name.split("/"))


def owned_entry_pattern(name: str) -> "re.Pattern[str]":
    """Matches the prefixes and staging entries that belong to ``name``."""
    return re.compile(rf"{re.escape(sanitize(name))}_\d+\.\d+\.\d+")


def rewrite_tarball_origin(tarball: str, cdn_registry: str) -> str:
    """Serve a tarball from the CDN origin when metadata came from the CDN."""
    tarball_url = URL(tarball)
    cdn_url = URL(cdn_registry)
    if tarball_url.host == cdn_url.host:
        return tarball
    return str(cdn_url.origin().join(URL(tarball_url.raw_path_qs, encoded=True)))


def validate_dependency_versions(name: str, dependencies: Mapping[str, str]) -> None:
    """Fail unless every dependency is pinned to a strict ``X.Y.Z`` version.

    Raises:
        InvalidDependencyVersion: On the first dependency with a range or tag.
    """
    for dependency, version in dependencies.items():
        if not is_strict_semver(version):
            raise InvalidDependencyVersion(
                f"Invalid version for dependency {dependency} of {name}: {version!r} "
                f"(expected X.Y.Z)"
            )


def _install_key(module_name, version, metadata, prefix, **options: Any) -> str:
    return stable_key(module_name, version, str(prefix), **options)


def _safe_members(archive: tarfile.TarFile, destination: Path) -> Iterable[tarfile.TarInfo]:
    destination = destination.resolve()
    for member in archive.getmembers():
        target = (destination / member.name).resolve()
        if target != destination and destination not in target.parents:
            raise InstallError(f"Archive member escapes destination: {member.name}")
        if member.issym() or member.islnk() or member.isdev():
            continue
        yield member


def extract_package(body: bytes, staging: Path) -> Path:
    """Extract a gzipped package tarball and return its top-level package directory."""
    staging.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(fileobj=io.BytesIO(body), mode="r:*") as archive:
            members = list(_safe_members(archive, staging))
            if hasattr(tarfile, "data_filter"):
                archive.extractall(staging, members=members, filter="data")
            else:
                archive.extractall(staging, members=members)
    except tarfile.TarError as exc:
        raise InstallError(f"Could not extract package tarball: {exc}") from exc

    package_dir = staging / Constants.TARBALL_PACKAGE_DIR
    if package_dir.is_dir():
        return package_dir
    children = [child for child in staging.iterdir() if child.is_dir()]
    if len(children) == 1:
        return children[0]
    raise InstallError("Package tarball has no single top-level directory")


def move_into_place(source: Path, destination: Path) -> None:
    """Replace ``destination`` with ``source`` using a rename."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    if destination.exists():
        remove_tree(destination)
    os.replace(source, destination)


class Installer:
    """Installs packages into live module directories.

    Identical concurrent requests share one installation; different
    processes installing into the same prefix are serialized by the lock
    service.
    """

    def __init__(
        self,
        registry: RegistryClient,
        lock_service: Optional[LockService] = None,
        http: Optional[HttpClient] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize the installer.

        Args:
            registry: Client used to fetch dependency metadata.
            lock_service: Directory lock; a default one is created when omitted.
            http: HTTP client for tarballs; defaults to the registry's client.
            logger: Logger for events; defaults to the module logger.
        """
        self._registry = registry
        self._http = http or registry.http
        self._logger = logger or logging.getLogger(__name__)
        self._locks = lock_service or LockService(logger=self._logger)
        self._memo: AsyncMemo[None] = AsyncMemo(self._install, key=_install_key)

    @property
    def lock_service(self) -> LockService:
        return self._locks

    async def install(
        self,
        module_name: str,
        version: str,
        metadata: PackageMetadata,
        prefix: PathLike,
        dependencies: bool = False,
        child_modules: Optional[Iterable[str]] = None,
        cdn_registry: Optional[str] = None,
        registry: str = Constants.NPM_REGISTRY,
    ) -> None:
        """Install ``module_name@version`` into ``prefix``.

        Args:
            module_name: Package name.
            version: Exact version to install.
            metadata: Package document containing ``version``.
            prefix: Version-scoped installation root.
            dependencies: Also install the version's dependencies into ``prefix``.
            child_modules: Restrict dependency installation to these names.
            cdn_registry: CDN mirror the metadata may have come from.
            registry: Primary registry, used for dependency metadata.

        Raises:
            InvalidDependencyVersion: A dependency is not pinned to ``X.Y.Z``.
            InstallError: Download, extraction or placement failed.
        """
        await self._memo(
            module_name,
            version,
            metadata,
            prefix,
            dependencies=dependencies,
            child_modules=sorted(child_modules) if child_modules is not None else None,
            cdn_registry=cdn_registry,
            registry=registry,
        )

    async def _install(
        self,
        module_name: str,
        version: str,
        metadata: PackageMetadata,
        prefix: PathLike,
        dependencies: bool,
        child_modules: Optional[Iterable[str]],
        cdn_registry: Optional[str],
        registry: str,
    ) -> None:
        version_info = metadata.versions.get(version)
        if version_info is None:
            raise InstallError(f"{module_name}@{version} is not in the registry metadata")
        if not version_info.tarball:
            raise InstallError(f"No tarball URL for {module_name}@{version}")

        tarball = version_info.tarball
        if cdn_registry and metadata.fetched_from_cdn:
            tarball = rewrite_tarball_origin(tarball, cdn_registry)

        if dependencies:
            validate_dependency_versions(module_name, version_info.dependencies)

        prefix = Path(prefix)
        package_dir = package_directory(prefix, module_name)
        manifest = package_dir / Constants.PACKAGE_JSON

        if not await asyncio.to_thread(manifest.exists):
            async with self._locks.lock(prefix):
                await self._place(module_name, version, tarball, prefix, package_dir, manifest)

        if dependencies:
            allowed = set(child_modules) if child_modules is not None else None
            await asyncio.gather(
                *(
                    self._install_dependency(name, dep_version, prefix, cdn_registry, registry)
                    for name, dep_version in version_info.dependencies.items()
                    if allowed is None or name in allowed
                )
            )

    async def _place(
        self,
        module_name: str,
        version: str,
        tarball: str,
        prefix: Path,
        package_dir: Path,
        manifest: Path,
    ) -> None:
        # Another process may have finished while we waited for the lock.
        if await asyncio.to_thread(manifest.exists):
            return

        staging = (
            prefix.parent
            / Constants.STAGING_DIR_NAME
            / f"{prefix.name}_{sanitize(module_name)}_{os.getpid()}_{uuid.uuid4().hex[:12]}"
        )
        with Timer() as timer:
            try:
                await asyncio.to_thread(self._clear_partial, package_dir)
                body = await self._download(module_name, version, tarball)
                extracted = await asyncio.to_thread(extract_package, body, staging)
                await asyncio.to_thread(move_into_place, extracted, package_dir)
                if not await asyncio.to_thread(manifest.exists):
                    raise InstallError(
                        f"{Constants.PACKAGE_JSON} missing after installing {module_name}@{version}"
                    )
            except Exception as exc:  # pylint: disable=broad-exception-caught
                await asyncio.to_thread(remove_tree, package_dir)
                self._logger.error(
                    "Install of %s@%s failed: %s",
                    module_name,
                    version,
                    exc,
                    extra=extra_context(event="install_error", component="installer", package=module_name),
                )
                if isinstance(exc, InstallError):
                    raise
                raise InstallError(f"Failed to install {module_name}@{version}: {exc}") from exc
            finally:
                await asyncio.to_thread(remove_tree, staging)

        self._logger.info(
            "Installed %s@%s into %s",
            module_name,
            version,
            prefix,
            extra=extra_context(
                event="install_success",
                component="installer",
                package=module_name,
                version=version,
                duration_ms=timer.duration_ms(),
            ),
        )

    @staticmethod
    def _clear_partial(package_dir: Path) -> None:
        package_dir.parent.mkdir(parents=True, exist_ok=True)
        if package_dir.exists():
            remove_tree(package_dir)

    async def _download(self, module_name: str, version: str, tarball: str) -> bytes:
        status, body = await self._http.get(tarball, context="tarball")
        if not 200 <= status < 300:
            raise InstallError(
                f"Tarball download for {module_name}@{version} returned status {status} "
                f"({safe_url(tarball)})"
            )
        return body

    async def _install_dependency(
        self,
        name: str,
        version: str,
        prefix: Path,
        cdn_registry: Optional[str],
        registry: str,
    ) -> None:
        manifest = package_directory(prefix, name) / Constants.PACKAGE_JSON
        if await asyncio.to_thread(manifest.exists):
            return
        metadata = await self._registry.fetch_info(name, registry=registry, cdn_registry=cdn_registry)
        await self.install(name, version, metadata, prefix, cdn_registry=cdn_registry, registry=registry)

    def reset(self) -> None:
        """Forget in-flight install bookkeeping."""
        self._memo.clear()
        self._locks.reset()
