"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the command line.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_ERROR = 3
    INSTALL_ERROR = 4


class DistTag:  # pylint: disable=too-few-public-methods
    """Well known dist-tag names."""

    LATEST = "latest"
    RELEASE = "release"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    NPM_REGISTRY = "https://registry.npmjs.org"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "GRABTHAR_LOG_LEVEL"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for registry, CDN and tarball requests

    # Registry metadata
    DIST_TAGS = "dist-tags"
    PACKAGE_JSON = "package.json"
    NODE_MODULES = "node_modules"
    CDN_REGISTRY_INFO_FILENAME = "info.json"
    CDN_REGISTRY_INFO_CACHEBUST_URL_TIME = 60 * 1000  # milliseconds
    INFO_MEMORY_CACHE_LIFETIME = 30  # seconds
    INFO_CACHE_KEY_PREFIX = "grabthar_npm_info"
    STRICT_SEMVER_PATTERN = r"^\d+\.\d+\.\d+$"

    # Polling
    NPM_POLL_INTERVAL = 60  # seconds
    POLL_BACKOFF_MULTIPLIER = 2
    POLL_MAX_BACKOFF_FACTOR = 32

    # Filesystem layout
    LIVE_MODULES_DIR_NAME = "__live_modules__"
    STAGING_DIR_NAME = ".staging"
    TARBALL_PACKAGE_DIR = "package"

    # Cross-process lock
    LOCK_FILENAME = ".grabthar.lock"
    LOCK_POLL_INTERVAL = 0.5  # seconds
    LOCK_STALE_AFTER = 60  # seconds

    # Watcher
    READ_CACHE_SIZE = 20

    # Stale directory sweep
    CLEAN_INTERVAL = 60 * 60  # seconds
    CLEAN_THRESHOLD = 7 * 24 * 60 * 60  # seconds
