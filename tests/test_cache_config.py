"""Tests for store configuration."""

import json

import pytest

from buildstore.cache.config import (
    StoreConfig,
    get_global_config,
    set_global_config,
)
from buildstore.cache.digest import DEFAULT_MAX_CONCURRENCY
from buildstore.storage import StoreClient

SD_VARIABLES = [
    "SD_STORE_URL",
    "SD_TOKEN",
    "SD_BUILD_ID",
    "SD_EVENT_ID",
    "SD_PIPELINE_ID",
    "SD_JOB_ID",
    "SD_PIPELINE_CACHE_DIR",
    "SD_EVENT_CACHE_DIR",
    "SD_JOB_CACHE_DIR",
    "SD_CACHE_STRATEGY",
    "SD_CACHE_COMPRESS",
    "SD_CACHE_MAX_SIZE_MB",
    "SD_CACHE_MAX_GO_THREADS",
    "SD_STORE_MAX_RETRIES",
    "SD_STORE_RETRY_WAIT_MIN",
    "SD_STORE_RETRY_WAIT_MAX",
    "SD_STORE_EXPECT_CONTINUE_TIMEOUT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every SD_* variable for the duration of the test."""
    for name in SD_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestDefaults:
    """Tests for default configuration."""

    def test_defaults(self):
        config = StoreConfig()
        assert config.store_url == ""
        assert config.cache_strategy == "disk"
        assert config.compress is True
        assert config.max_size_mb == 0
        assert config.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.expect_continue_timeout is None

    def test_invalid_strategy(self):
        with pytest.raises(ValueError, match="Unknown cache strategy"):
            StoreConfig(cache_strategy="s3")

    def test_strategy_normalized(self):
        assert StoreConfig(cache_strategy=" Remote ").cache_strategy == "remote"

    def test_cache_dirs_normalized(self):
        """Test scope names are lowercased and empty entries dropped."""
        config = StoreConfig(cache_dirs={"Event": "/cache/events", "job": ""})
        assert config.cache_dirs == {"event": "/cache/events"}


class TestFromEnv:
    """Tests for environment configuration."""

    def test_empty_environment(self, clean_env):
        config = StoreConfig.from_env()
        assert config == StoreConfig()

    def test_all_variables(self, clean_env):
        clean_env.setenv("SD_STORE_URL", "http://store.example/v1")
        clean_env.setenv("SD_TOKEN", "secret-token")
        clean_env.setenv("SD_BUILD_ID", "1234")
        clean_env.setenv("SD_EVENT_ID", "499")
        clean_env.setenv("SD_PIPELINE_ID", "7")
        clean_env.setenv("SD_JOB_ID", "12")
        clean_env.setenv("SD_EVENT_CACHE_DIR", "/cache/events")
        clean_env.setenv("SD_CACHE_STRATEGY", "remote")
        clean_env.setenv("SD_CACHE_COMPRESS", "false")
        clean_env.setenv("SD_CACHE_MAX_SIZE_MB", "512")
        clean_env.setenv("SD_CACHE_MAX_GO_THREADS", "64")
        clean_env.setenv("SD_STORE_MAX_RETRIES", "3")
        clean_env.setenv("SD_STORE_RETRY_WAIT_MIN", "0.5")
        clean_env.setenv("SD_STORE_RETRY_WAIT_MAX", "4")
        clean_env.setenv("SD_STORE_EXPECT_CONTINUE_TIMEOUT", "10")

        config = StoreConfig.from_env()

        assert config.store_url == "http://store.example/v1"
        assert config.token == "secret-token"
        assert config.build_id == "1234"
        assert config.scope_id("event") == "499"
        assert config.scope_id("pipeline") == "7"
        assert config.scope_id("job") == "12"
        assert config.cache_dirs == {"event": "/cache/events"}
        assert config.cache_strategy == "remote"
        assert config.compress is False
        assert config.max_size_mb == 512
        assert config.max_concurrency == 64
        assert config.retry_max_attempts == 3
        assert config.retry_wait_min == 0.5
        assert config.retry_wait_max == 4.0
        assert config.expect_continue_timeout == 10.0

    @pytest.mark.parametrize("value,expected", [("1", True), ("yes", True), ("0", False), ("", True)])
    def test_compress_flag(self, clean_env, value, expected):
        clean_env.setenv("SD_CACHE_COMPRESS", value)
        assert StoreConfig.from_env().compress is expected

    def test_invalid_number(self, clean_env):
        """Test unparsable numbers name the offending variable."""
        clean_env.setenv("SD_CACHE_MAX_SIZE_MB", "lots")
        with pytest.raises(ValueError, match="SD_CACHE_MAX_SIZE_MB"):
            StoreConfig.from_env()


class TestPersistence:
    """Tests for saving and loading config files."""

    def test_save_and_load(self, tmp_path):
        """Test a saved config loads back, without its token."""
        path = tmp_path / "conf" / "buildstore.json"
        config = StoreConfig(
            store_url="http://store.example/v1",
            token="secret-token",
            event_id="499",
            cache_dirs={"event": "/cache/events"},
            max_size_mb=100,
        )
        config.save(path)

        assert "token" not in json.loads(path.read_text())
        loaded = StoreConfig.load(path)
        assert loaded.token == ""
        assert loaded.store_url == config.store_url
        assert loaded.cache_dirs == config.cache_dirs
        assert loaded.max_size_mb == 100

    def test_load_missing_file(self, tmp_path):
        assert StoreConfig.load(tmp_path / "missing.json") == StoreConfig()


class TestHelpers:
    """Tests for derived values."""

    def test_cache_dir_expands_home(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/builder")
        config = StoreConfig(cache_dirs={"job": "~/cache/jobs"})
        assert config.cache_dir("job") == "/home/builder/cache/jobs"
        assert config.cache_dir("event") is None

    def test_scope_id_build(self):
        assert StoreConfig(build_id="1234").scope_id("build") == "1234"

    def test_retry_policy(self):
        policy = StoreConfig(retry_max_attempts=2, retry_wait_min=0.1, retry_wait_max=0.2).retry_policy()
        assert policy.max_attempts == 2
        assert policy.wait(2) == 0.1
        assert policy.wait(5) == 0.2

    def test_make_client(self):
        config = StoreConfig(store_url="http://store.example/v1", token="t", expect_continue_timeout=3.0)
        with config.make_client() as client:
            assert isinstance(client, StoreClient)
            assert client.base_url == "http://store.example/v1"
            assert client.expect_continue_timeout == 3.0

    def test_make_client_without_url(self):
        with pytest.raises(ValueError, match="Store URL is not configured"):
            StoreConfig().make_client()


class TestGlobalConfig:
    """Tests for the process-wide configuration."""

    def test_set_and_reset(self, clean_env):
        custom = StoreConfig(build_id="42")
        set_global_config(custom)
        try:
            assert get_global_config() is custom
        finally:
            set_global_config(None)

    def test_built_from_env(self, clean_env):
        clean_env.setenv("SD_BUILD_ID", "77")
        set_global_config(None)
        try:
            assert get_global_config().build_id == "77"
        finally:
            set_global_config(None)
