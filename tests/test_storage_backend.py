"""Tests for StoreClient.

HTTP traffic is mocked with pytest-httpx; waits between attempts are
recorded instead of slept.
"""

import io
import logging
import tarfile
import zipfile

import httpx
import pytest
from pytest_httpx import HTTPXMock

from buildstore.storage import (
    RetryExhaustedError,
    RetryPolicy,
    StoreClient,
    StoreError,
    StoreHTTPError,
    StoreLocator,
    StoreNotFoundError,
)
from buildstore.storage.backend import content_type_for

BASE = "http://store.example/v1"
TOKEN = "secret-token"

ARTIFACT_URL = f"{BASE}/builds/1234/ARTIFACTS/report.txt"
CACHE_URL = f"{BASE}/caches/events/499/app.tar.gz"


@pytest.fixture
def sleeps():
    """Waits requested by the client, in order."""
    return []


@pytest.fixture
def store(sleeps):
    """Create a StoreClient with three attempts and recorded waits."""
    policy = RetryPolicy(max_attempts=3, wait_min=1.0, wait_max=10.0)
    with StoreClient(BASE, TOKEN, retry_policy=policy, sleep=sleeps.append) as client:
        yield client


@pytest.fixture
def report(tmp_path):
    """A small local file to upload."""
    path = tmp_path / "report.txt"
    path.write_text("all tests passed\n")
    return path


def tar_bytes(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = 1_600_000_000
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def zip_bytes(files):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buf.getvalue()


class TestContentType:
    """Tests for content type selection."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("app.tar.gz", "application/gzip"),
            ("deps.TGZ", "application/gzip"),
            ("coverage.zip", "application/zip"),
            ("app_md5.json", "application/json"),
            ("step-test", "text/plain"),
        ],
    )
    def test_content_type_for(self, name, expected):
        assert content_type_for(name) == expected


class TestUpload:
    """Tests for PUT requests."""

    def test_headers(self, store, report, httpx_mock: HTTPXMock):
        """Test the token, content type and length are sent."""
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL)

        store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        request = httpx_mock.get_requests()[0]
        assert request.method == "PUT"
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"
        assert request.headers["Content-Type"] == "text/plain"
        assert request.headers["Content-Length"] == str(len("all tests passed\n"))
        assert "Expect" not in request.headers

    def test_body_streamed(self, store, report, httpx_mock: HTTPXMock):
        """Test the file content arrives intact."""
        bodies = []

        def record(request: httpx.Request):
            bodies.append(request.read())
            return httpx.Response(200)

        httpx_mock.add_callback(record, method="PUT", url=ARTIFACT_URL)

        store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert bodies == [b"all tests passed\n"]

    def test_retry_resends_full_body(self, store, report, sleeps, httpx_mock: HTTPXMock):
        """Test every attempt sends the whole file again."""
        bodies = []
        statuses = iter([503, 200])

        def flaky(request: httpx.Request):
            bodies.append(request.read())
            return httpx.Response(next(statuses))

        httpx_mock.add_callback(flaky, method="PUT", url=ARTIFACT_URL)
        httpx_mock.add_callback(flaky, method="PUT", url=ARTIFACT_URL)

        store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert bodies == [b"all tests passed\n", b"all tests passed\n"]
        assert sleeps == [1.0]

    def test_expect_continue_on_cache_uploads(self, tmp_path, httpx_mock: HTTPXMock):
        """Test caches announce their body when a continue timeout is set."""
        archive = tmp_path / "app.tar.gz"
        archive.write_bytes(tar_bytes({"app/x": b"x"}))
        httpx_mock.add_response(method="PUT", url=CACHE_URL)
        httpx_mock.add_response(method="PUT", url=f"{BASE}/builds/1/ARTIFACTS/app.tar.gz")

        with StoreClient(BASE, TOKEN, expect_continue_timeout=5.0) as client:
            client.upload(StoreLocator.cache("event", 499, "app.tar.gz"), archive)
            client.upload(StoreLocator.artifact(1, "app.tar.gz"), archive)

        cache_request, artifact_request = httpx_mock.get_requests()
        assert cache_request.headers["Expect"] == "100-continue"
        assert cache_request.headers["Content-Type"] == "application/gzip"
        assert "Expect" not in artifact_request.headers

    def test_no_expect_without_timeout(self, store, tmp_path, httpx_mock: HTTPXMock):
        archive = tmp_path / "app.tar.gz"
        archive.write_bytes(tar_bytes({"app/x": b"x"}))
        httpx_mock.add_response(method="PUT", url=CACHE_URL)

        store.upload(StoreLocator.cache("event", 499, "app.tar.gz"), archive)

        assert "Expect" not in httpx_mock.get_requests()[0].headers

    def test_directory_under_archive_key(self, store, sample_tree, httpx_mock: HTTPXMock):
        """Test a directory is packed when uploaded under a zip name."""
        bodies = []

        def record(request: httpx.Request):
            bodies.append(request.read())
            return httpx.Response(201)

        url = f"{BASE}/builds/1234/ARTIFACTS/project.zip"
        httpx_mock.add_callback(record, method="PUT", url=url)

        store.upload(StoreLocator.artifact(1234, "project.zip"), sample_tree)

        with zipfile.ZipFile(io.BytesIO(bodies[0])) as zf:
            assert "project/sub/b.bin" in zf.namelist()
        assert httpx_mock.get_requests()[0].headers["Content-Type"] == "application/zip"

    def test_directory_under_plain_key(self, store, sample_tree):
        """Test a directory cannot be uploaded as a plain object."""
        with pytest.raises(StoreError, match="archive name"):
            store.upload(StoreLocator.artifact(1234, "project"), sample_tree)


class TestRetries:
    """Tests for retry behaviour."""

    def test_server_errors_exhaust(self, store, report, sleeps, httpx_mock: HTTPXMock):
        """Test persistent 5xx stops after max_attempts."""
        for _ in range(3):
            httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=500)

        with pytest.raises(RetryExhaustedError) as excinfo:
            store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert len(httpx_mock.get_requests()) == 3
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, StoreHTTPError)
        assert excinfo.value.last_error.status_code == 500
        assert sleeps == [1.0, 2.0]

    def test_not_found_is_terminal(self, store, tmp_path, sleeps, httpx_mock: HTTPXMock):
        """Test 404 fails immediately without retrying."""
        httpx_mock.add_response(method="GET", url=f"{BASE}/builds/1234-step-test", status_code=404)

        with pytest.raises(StoreNotFoundError) as excinfo:
            store.download(StoreLocator.log(1234, "step-test"), tmp_path / "test.log")

        assert excinfo.value.status_code == 404
        assert len(httpx_mock.get_requests()) == 1
        assert sleeps == []
        assert not (tmp_path / "test.log").exists()

    def test_forbidden_is_terminal(self, store, report, httpx_mock: HTTPXMock):
        """Test 4xx codes outside the retry list fail immediately."""
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=403, text="no access")

        with pytest.raises(StoreHTTPError, match="no access") as excinfo:
            store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert excinfo.value.status_code == 403
        assert not isinstance(excinfo.value, StoreNotFoundError)
        assert len(httpx_mock.get_requests()) == 1

    def test_throttled_then_ok(self, store, report, sleeps, httpx_mock: HTTPXMock):
        """Test configured 4xx codes are retried."""
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=429)
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=200)

        store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert len(httpx_mock.get_requests()) == 2
        assert sleeps == [1.0]

    def test_recovers_on_third_attempt(self, store, tmp_path, sleeps, httpx_mock: HTTPXMock):
        url = f"{BASE}/builds/1234-step-test"
        httpx_mock.add_response(method="GET", url=url, status_code=500)
        httpx_mock.add_response(method="GET", url=url, status_code=502)
        httpx_mock.add_response(method="GET", url=url, content=b"line 1\nline 2\n")

        written = store.download(StoreLocator.log(1234, "step-test"), tmp_path / "test.log")

        assert written == [str(tmp_path / "test.log")]
        assert (tmp_path / "test.log").read_bytes() == b"line 1\nline 2\n"
        assert sleeps == [1.0, 2.0]

    def test_network_errors_exhaust(self, store, sleeps, httpx_mock: HTTPXMock):
        """Test transport failures are retried and then reported."""
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("connection refused"))

        with pytest.raises(RetryExhaustedError) as excinfo:
            store.remove(StoreLocator.artifact(1234, "report.txt"))

        assert isinstance(excinfo.value.last_error, httpx.ConnectError)
        assert len(httpx_mock.get_requests()) == 3

    def test_attempts_are_logged(self, store, report, caplog, httpx_mock: HTTPXMock):
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=500)
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL)

        with caplog.at_level(logging.WARNING, logger="buildstore.storage.backend"):
            store.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert "(Try 1 of 3) error received from uploading to" in caplog.text
        assert "(Try 2 of 3)" not in caplog.text

    def test_injected_logger(self, report, httpx_mock: HTTPXMock, caplog):
        """Test retry diagnostics go to the logger given to the client."""
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL, status_code=500)
        httpx_mock.add_response(method="PUT", url=ARTIFACT_URL)
        logger = logging.getLogger("ci.step")
        policy = RetryPolicy(max_attempts=2, wait_min=0, wait_max=0)

        with caplog.at_level(logging.WARNING, logger="ci.step"):
            with StoreClient(BASE, TOKEN, retry_policy=policy, logger=logger) as client:
                client.upload(StoreLocator.artifact(1234, "report.txt"), report)

        assert [r.name for r in caplog.records] == ["ci.step"]


class TestDownload:
    """Tests for GET requests."""

    def test_plain_object_to_nested_path(self, store, tmp_path, httpx_mock: HTTPXMock):
        """Test missing parent directories are created."""
        httpx_mock.add_response(method="GET", url=ARTIFACT_URL, content=b"report body")
        dest = tmp_path / "a" / "b" / "report.txt"

        written = store.download(StoreLocator.artifact(1234, "report.txt"), dest)

        assert written == [str(dest)]
        assert dest.read_bytes() == b"report body"
        assert not (tmp_path / "a" / "b" / "report.txt.part").exists()
        assert httpx_mock.get_requests()[0].headers["Authorization"] == f"Bearer {TOKEN}"

    def test_tarball_is_unpacked(self, store, tmp_path, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            method="GET", url=CACHE_URL, content=tar_bytes({"app/main.py": b"print(1)\n"})
        )

        written = store.download(StoreLocator.cache("event", 499, "app.tar.gz"), tmp_path)

        assert written == [str(tmp_path / "app" / "main.py")]
        assert (tmp_path / "app" / "main.py").read_bytes() == b"print(1)\n"

    def test_zip_is_unpacked(self, store, tmp_path, httpx_mock: HTTPXMock):
        url = f"{BASE}/builds/1234/ARTIFACTS/coverage.zip"
        httpx_mock.add_response(method="GET", url=url, content=zip_bytes({"index.html": b"<html/>"}))

        store.download(StoreLocator.artifact(1234, "coverage.zip"), tmp_path / "coverage")

        assert (tmp_path / "coverage" / "index.html").read_bytes() == b"<html/>"

    def test_unpack_keeps_local_files(self, store, tmp_path, httpx_mock: HTTPXMock):
        """Test overwrite=False leaves existing files alone."""
        httpx_mock.add_response(
            method="GET", url=CACHE_URL, content=tar_bytes({"app/main.py": b"print(1)\n"})
        )
        (tmp_path / "app").mkdir()
        (tmp_path / "app" / "main.py").write_text("local\n")

        store.download(StoreLocator.cache("event", 499, "app.tar.gz"), tmp_path, overwrite=False)

        assert (tmp_path / "app" / "main.py").read_text() == "local\n"

    def test_get_json(self, store, httpx_mock: HTTPXMock):
        url = f"{BASE}/caches/events/499/app_md5.json"
        httpx_mock.add_response(method="GET", url=url, json={"main.py": "abc"})

        assert store.get_json(url) == {"main.py": "abc"}

    def test_get_json_invalid(self, store, httpx_mock: HTTPXMock):
        """Test a non-JSON body is a store error, not retried."""
        url = f"{BASE}/caches/events/499/app_md5.json"
        httpx_mock.add_response(method="GET", url=url, text="<html>oops</html>")

        with pytest.raises(StoreError, match="Invalid JSON"):
            store.get_json(url)
        assert len(httpx_mock.get_requests()) == 1


class TestRemove:
    """Tests for DELETE requests."""

    def test_remove(self, store, httpx_mock: HTTPXMock):
        url = f"{BASE}/caches/jobs/7/deps"
        httpx_mock.add_response(method="DELETE", url=url, status_code=204)

        store.remove(StoreLocator.cache("job", 7, "deps"))

        request = httpx_mock.get_requests()[0]
        assert request.method == "DELETE"
        assert request.headers["Authorization"] == f"Bearer {TOKEN}"

    def test_remove_missing(self, store, httpx_mock: HTTPXMock):
        url = f"{BASE}/caches/jobs/7/deps"
        httpx_mock.add_response(method="DELETE", url=url, status_code=404)

        with pytest.raises(StoreNotFoundError):
            store.remove(StoreLocator.cache("job", 7, "deps"))


class TestClientLifecycle:
    """Tests for connection pool ownership."""

    def test_shared_client_not_closed(self):
        shared = httpx.Client()
        with StoreClient(BASE, TOKEN, client=shared):
            pass
        assert not shared.is_closed
        shared.close()

    def test_own_client_closed(self):
        client = StoreClient(BASE, TOKEN)
        client.close()
        assert client.client.is_closed
