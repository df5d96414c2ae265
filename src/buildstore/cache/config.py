"""Store and cache configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

from buildstore.cache.digest import DEFAULT_MAX_CONCURRENCY
from buildstore.storage.backend import StoreClient
from buildstore.storage.categories import Scope
from buildstore.storage.retry import RetryPolicy
from buildstore.utils import expand_home

CACHE_STRATEGIES = ("disk", "remote")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, kind):
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    try:
        return kind(value)
    except ValueError as e:
        raise ValueError(f"Invalid value for {name}: {value!r}") from e


@dataclass
class StoreConfig:
    """Configuration for the store client and the build cache.

    Attributes:
        store_url: Base URL of the store API (e.g., 'https://store.example/v1')
        token: Bearer token for store requests
        build_id: Current build, used for artifacts and logs
        event_id: Current event, used for event-scoped caches
        pipeline_id: Current pipeline, used for pipeline-scoped caches
        job_id: Current job, used for job-scoped caches
        cache_dirs: Base cache directory per scope name, for the disk cache
        cache_strategy: 'disk' (shared file server) or 'remote' (store API)
        compress: Store disk cache payloads as archives instead of plain copies
        max_size_mb: Largest source tree accepted by cache set (0 = unlimited)
        max_concurrency: Ceiling on concurrent hashing tasks per wave
        retry_max_attempts: Attempts per store request, including the first
        retry_wait_min: Wait before the second attempt in seconds
        retry_wait_max: Upper bound for any wait in seconds
        expect_continue_timeout: Write timeout for cache uploads sent with
            ``Expect: 100-continue`` (None = header not sent)
        lock_timeout: Seconds to wait for a disk cache lock
    """

    store_url: str = ""
    token: str = ""
    build_id: str = ""
    event_id: str = ""
    pipeline_id: str = ""
    job_id: str = ""
    cache_dirs: Dict[str, str] = field(default_factory=dict)
    cache_strategy: str = "disk"
    compress: bool = True
    max_size_mb: int = 0
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retry_max_attempts: int = 5
    retry_wait_min: float = 1.0
    retry_wait_max: float = 30.0
    expect_continue_timeout: Optional[float] = None
    lock_timeout: float = 30.0

    def __post_init__(self):
        """Normalize scope names and validate the cache strategy."""
        self.cache_dirs = {
            str(scope).strip().lower(): str(path) for scope, path in self.cache_dirs.items() if path
        }
        self.cache_strategy = self.cache_strategy.strip().lower()
        if self.cache_strategy not in CACHE_STRATEGIES:
            raise ValueError(
                f"Unknown cache strategy {self.cache_strategy!r}, expected one of {CACHE_STRATEGIES}"
            )

    @classmethod
    def load(cls, config_path: Union[str, Path]) -> "StoreConfig":
        """Load configuration from a JSON file.

        Args:
            config_path: Path to config file

        Returns:
            StoreConfig instance (defaults if the file does not exist)
        """
        config_path = Path(config_path)
        if not config_path.exists():
            return cls()

        with open(config_path, "r") as f:
            data = json.load(f)

        return cls(**data)

    def save(self, config_path: Union[str, Path]) -> None:
        """Save configuration to a JSON file.

        The token is never written to disk.

        Args:
            config_path: Path to config file
        """
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data.pop("token")

        with open(config_path, "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Create configuration from environment variables.

        Environment variables:
            SD_STORE_URL: Store base URL
            SD_TOKEN: Bearer token
            SD_BUILD_ID, SD_EVENT_ID, SD_PIPELINE_ID, SD_JOB_ID: Identifiers
            SD_PIPELINE_CACHE_DIR, SD_EVENT_CACHE_DIR, SD_JOB_CACHE_DIR: Disk
                cache base directory per scope
            SD_CACHE_STRATEGY: 'disk' or 'remote'
            SD_CACHE_COMPRESS: Archive disk cache payloads (true/false)
            SD_CACHE_MAX_SIZE_MB: Source size limit for cache set
            SD_CACHE_MAX_GO_THREADS: Hashing concurrency ceiling
            SD_STORE_MAX_RETRIES: Attempts per store request
            SD_STORE_RETRY_WAIT_MIN, SD_STORE_RETRY_WAIT_MAX: Backoff bounds
            SD_STORE_EXPECT_CONTINUE_TIMEOUT: 100-continue timeout in seconds

        Returns:
            StoreConfig instance

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        cache_dirs = {}
        for scope in ("pipeline", "event", "job"):
            path = os.getenv(f"SD_{scope.upper()}_CACHE_DIR")
            if path:
                cache_dirs[scope] = path

        config = cls(
            store_url=os.getenv("SD_STORE_URL", ""),
            token=os.getenv("SD_TOKEN", ""),
            build_id=os.getenv("SD_BUILD_ID", ""),
            event_id=os.getenv("SD_EVENT_ID", ""),
            pipeline_id=os.getenv("SD_PIPELINE_ID", ""),
            job_id=os.getenv("SD_JOB_ID", ""),
            cache_dirs=cache_dirs,
            cache_strategy=os.getenv("SD_CACHE_STRATEGY", "") or "disk",
            compress=_env_bool("SD_CACHE_COMPRESS", True),
        )

        max_size = _env_number("SD_CACHE_MAX_SIZE_MB", int)
        if max_size is not None:
            config.max_size_mb = max_size

        max_concurrency = _env_number("SD_CACHE_MAX_GO_THREADS", int)
        if max_concurrency is not None:
            config.max_concurrency = max_concurrency

        max_retries = _env_number("SD_STORE_MAX_RETRIES", int)
        if max_retries is not None:
            config.retry_max_attempts = max_retries

        wait_min = _env_number("SD_STORE_RETRY_WAIT_MIN", float)
        if wait_min is not None:
            config.retry_wait_min = wait_min

        wait_max = _env_number("SD_STORE_RETRY_WAIT_MAX", float)
        if wait_max is not None:
            config.retry_wait_max = wait_max

        config.expect_continue_timeout = _env_number("SD_STORE_EXPECT_CONTINUE_TIMEOUT", float)

        return config

    def retry_policy(self) -> RetryPolicy:
        """Build the RetryPolicy described by this configuration."""
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            wait_min=self.retry_wait_min,
            wait_max=self.retry_wait_max,
        )

    def make_client(self, **kwargs) -> StoreClient:
        """Create a StoreClient for the configured store.

        Args:
            **kwargs: Extra StoreClient arguments (e.g., client, logger)

        Raises:
            ValueError: If no store URL is configured
        """
        if not self.store_url:
            raise ValueError("Store URL is not configured (set SD_STORE_URL)")
        return StoreClient(
            self.store_url,
            self.token,
            retry_policy=self.retry_policy(),
            expect_continue_timeout=self.expect_continue_timeout,
            **kwargs,
        )

    def scope_id(self, scope: Union[str, Scope]) -> str:
        """Identifier that a scope resolves to for the current build.

        Examples:
            >>> StoreConfig(event_id='499').scope_id('event')
            '499'
        """
        scope = Scope.parse(scope)
        return {
            Scope.PIPELINE: self.pipeline_id,
            Scope.EVENT: self.event_id,
            Scope.JOB: self.job_id,
            Scope.BUILD: self.build_id,
        }[scope]

    def cache_dir(self, scope: Union[str, Scope]) -> Optional[str]:
        """Base disk cache directory of a scope, with ``~/`` expanded.

        Returns:
            Absolute directory path, or None if not configured
        """
        scope = Scope.parse(scope)
        path = self.cache_dirs.get(scope.value)
        if not path:
            return None
        return os.path.abspath(expand_home(path))


# Global configuration instance
_global_config: Optional[StoreConfig] = None


def get_global_config() -> StoreConfig:
    """Get global store configuration.

    Built from the environment on first use.

    Returns:
        Global StoreConfig instance
    """
    global _global_config
    if _global_config is None:
        _global_config = StoreConfig.from_env()
    return _global_config


def set_global_config(config: Optional[StoreConfig]) -> None:
    """Set global store configuration.

    Args:
        config: StoreConfig instance to use globally (None to reset)
    """
    global _global_config
    _global_config = config
