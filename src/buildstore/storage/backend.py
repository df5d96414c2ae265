"""HTTP transport for the build store.

StoreClient performs authenticated PUT/GET/DELETE requests against the store
and retries failed attempts according to a RetryPolicy. Request bodies and
response bodies are streamed from and to disk; a whole object is never held
in memory.
"""

import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union
from urllib.parse import urlsplit

import httpx

from buildstore.archive import is_archive_name, pack_tree, unpack_file, unzip, zip_tree
from buildstore.storage.categories import StoreLocator, StoreType
from buildstore.storage.retry import RetryPolicy

T = TypeVar("T")

COPY_BUFSIZE = 1024 * 1024


class StoreError(Exception):
    """Base exception for store transport errors."""

    pass


class StoreHTTPError(StoreError):
    """Raised when the store answers with a non-2xx status."""

    def __init__(self, status_code: int, url: str, message: str = ""):
        self.status_code = status_code
        self.url = url
        detail = f": {message}" if message else ""
        super().__init__(f"HTTP {status_code} returned for {url}{detail}")


class StoreNotFoundError(StoreHTTPError):
    """Raised when the requested object does not exist (HTTP 404)."""

    pass


class RetryExhaustedError(StoreError):
    """Raised when every attempt of a request failed."""

    def __init__(self, action: str, url: str, attempts: int, last_error: Exception):
        self.action = action
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{action} {url} failed after {attempts} attempts: {last_error}")


def content_type_for(name: str) -> str:
    """Pick the Content-Type header for an uploaded object.

    Examples:
        >>> content_type_for('node_modules.tar.gz')
        'application/gzip'
        >>> content_type_for('build.log')
        'text/plain'
    """
    lowered = name.lower()
    if lowered.endswith((".tar.gz", ".tgz")):
        return "application/gzip"
    if lowered.endswith(".zip"):
        return "application/zip"
    if lowered.endswith(".json"):
        return "application/json"
    return "text/plain"


class StoreClient:
    """Client for the build store.

    The client holds an httpx connection pool and a read-only RetryPolicy and
    nothing else, so concurrent calls on one instance are independent.

    Examples:
        >>> with StoreClient('https://store.example/v1', token) as store:
        ...     store.upload(StoreLocator.artifact(42, 'report.html'), 'report.html')
        ...     store.download(StoreLocator.log(42, 'step-test'), 'logs/test.log')
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        expect_continue_timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize store client.

        Args:
            base_url: Store base URL (e.g., 'https://store.example/v1')
            token: Bearer token sent with every request
            retry_policy: Retry behaviour (defaults to RetryPolicy())
            timeout: Per-request timeout in seconds
            expect_continue_timeout: If set, cache uploads send
                ``Expect: 100-continue`` and use this as their write timeout
            client: httpx.Client to use instead of a private one
            logger: Logger for retry diagnostics (module logger if None)
            sleep: Function used to wait between attempts
        """
        self.base_url = base_url
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self.expect_continue_timeout = expect_continue_timeout
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def __enter__(self) -> "StoreClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        """Close the connection pool if this client created it."""
        if self._owns_client:
            self.client.close()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _check_response(response: httpx.Response, url: str) -> None:
        if response.is_success:
            return
        response.read()
        message = response.text.strip()[:500]
        if response.status_code == 404:
            raise StoreNotFoundError(response.status_code, url, message)
        raise StoreHTTPError(response.status_code, url, message)

    def _with_retries(self, action: str, url: str, attempt_fn: Callable[[], T]) -> T:
        """Run one request attempt repeatedly until it succeeds or gives up.

        Raises:
            StoreHTTPError: On a status the policy does not retry (404 included)
            RetryExhaustedError: When max_attempts attempts all failed
        """
        policy = self.retry_policy
        last_error: Optional[Exception] = None
        for attempt in range(1, policy.max_attempts + 1):
            delay = policy.wait(attempt)
            if delay > 0:
                self.sleep(delay)
            try:
                return attempt_fn()
            except StoreHTTPError as e:
                if not policy.should_retry(e.status_code):
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = e
            self.logger.warning(
                f"(Try {attempt} of {policy.max_attempts}) error received from {action} {url}: {last_error}"
            )
        raise RetryExhaustedError(action, url, policy.max_attempts, last_error) from last_error

    # ==================== URL-level requests ====================

    def put_file(
        self,
        url: str,
        file_path: Union[str, Path],
        content_type: str = "text/plain",
        expect_continue: bool = False,
    ) -> None:
        """Stream a local file to url with PUT.

        The file is reopened for every attempt, so a retried attempt never
        reuses a partially consumed body.

        Args:
            url: Target URL
            file_path: Local file to send
            content_type: Content-Type header
            expect_continue: Send ``Expect: 100-continue`` when a continue
                timeout is configured
        """
        file_path = os.fspath(file_path)

        def attempt() -> None:
            with open(file_path, "rb") as body:
                size = os.fstat(body.fileno()).st_size
                headers = {"Content-Type": content_type, "Content-Length": str(size)}
                timeout: Union[float, httpx.Timeout] = self.timeout
                if expect_continue and self.expect_continue_timeout:
                    headers["Expect"] = "100-continue"
                    timeout = httpx.Timeout(self.timeout, write=self.expect_continue_timeout)
                response = self.client.put(
                    url, content=body, headers=self._headers(headers), timeout=timeout
                )
            self._check_response(response, url)

        self.logger.debug(f"Uploading {file_path} to {url}")
        self._with_retries("uploading to", url, attempt)

    def get_to_file(self, url: str, dest_file: Union[str, Path]) -> str:
        """Stream the body of a GET request into dest_file.

        Parent directories are created as needed. The body goes to a
        ``.part`` file first and replaces dest_file only once complete.

        Returns:
            Absolute path of the written file
        """
        dest_file = os.path.abspath(os.fspath(dest_file))
        partial = dest_file + ".part"

        def attempt() -> str:
            with self.client.stream("GET", url, headers=self._headers()) as response:
                self._check_response(response, url)
                os.makedirs(os.path.dirname(dest_file), exist_ok=True)
                try:
                    with open(partial, "wb") as out:
                        for chunk in response.iter_bytes(COPY_BUFSIZE):
                            out.write(chunk)
                except BaseException:
                    if os.path.exists(partial):
                        os.remove(partial)
                    raise
            os.replace(partial, dest_file)
            return dest_file

        self.logger.debug(f"Downloading {url} to {dest_file}")
        return self._with_retries("downloading from", url, attempt)

    def get_json(self, url: str) -> Any:
        """GET url and decode the body as JSON.

        Raises:
            StoreError: If the body is not valid JSON
        """
        import orjson

        def attempt() -> Any:
            response = self.client.get(url, headers=self._headers())
            self._check_response(response, url)
            try:
                return orjson.loads(response.content)
            except orjson.JSONDecodeError as e:
                raise StoreError(f"Invalid JSON returned from {url}: {e}") from e

        return self._with_retries("downloading from", url, attempt)

    def delete(self, url: str) -> None:
        """DELETE the object at url."""

        def attempt() -> None:
            response = self.client.delete(url, headers=self._headers())
            self._check_response(response, url)

        self.logger.debug(f"Removing {url}")
        self._with_retries("removing", url, attempt)

    # ==================== Locator-level operations ====================

    def url_for(self, locator: StoreLocator) -> str:
        """Resolve a locator against this client's base URL."""
        return locator.url(self.base_url)

    def upload(
        self,
        locator: StoreLocator,
        local_path: Union[str, Path],
        content_type: Optional[str] = None,
    ) -> None:
        """Upload a local file to the object named by locator.

        A directory can be uploaded when the locator key names an archive
        (``.zip`` or ``.tar.gz``); it is packed into a temporary archive first.

        Args:
            locator: Destination object
            local_path: File (or directory, see above) to send
            content_type: Content-Type override (derived from the key if None)

        Raises:
            StoreError: If local_path is a directory and the key is not an archive name
            StoreHTTPError: On a terminal HTTP status
            RetryExhaustedError: When every attempt failed
        """
        url = self.url_for(locator)
        local_path = os.fspath(local_path)
        content_type = content_type or content_type_for(locator.key)
        expect_continue = locator.store_type is StoreType.CACHE

        if not os.path.isdir(local_path):
            self.put_file(url, local_path, content_type, expect_continue=expect_continue)
            return

        if not is_archive_name(locator.key):
            raise StoreError(
                f"{local_path} is a directory; upload it under an archive name (.zip or .tar.gz)"
            )
        with tempfile.TemporaryDirectory(prefix="buildstore-") as tmp:
            archive = os.path.join(tmp, os.path.basename(urlsplit(url).path))
            if archive.lower().endswith(".zip"):
                zip_tree(local_path, archive)
            else:
                pack_tree(local_path, archive)
            self.put_file(url, archive, content_type, expect_continue=expect_continue)

    def download(
        self, locator: StoreLocator, dest_path: Union[str, Path], overwrite: bool = True
    ) -> List[str]:
        """Download the object named by locator.

        When the object is an archive (its key ends in ``.zip`` or
        ``.tar.gz``) it is unpacked into the directory dest_path instead of
        being written as-is. With overwrite=False, entries already present
        below dest_path are kept.

        Returns:
            Paths written below dest_path, or [dest_path] for a plain object

        Raises:
            StoreNotFoundError: If the object does not exist
            StoreHTTPError: On another terminal HTTP status
            RetryExhaustedError: When every attempt failed
            ArchiveError: If the downloaded archive cannot be unpacked
        """
        url = self.url_for(locator)
        dest_path = os.path.abspath(os.fspath(dest_path))
        name = os.path.basename(urlsplit(url).path)

        if not is_archive_name(locator.key):
            return [self.get_to_file(url, dest_path)]

        with tempfile.TemporaryDirectory(prefix="buildstore-") as tmp:
            archive = self.get_to_file(url, os.path.join(tmp, name))
            if archive.lower().endswith(".zip"):
                return unzip(archive, dest_path, overwrite=overwrite)
            return unpack_file(archive, dest_path, overwrite=overwrite)

    def remove(self, locator: StoreLocator) -> None:
        """Delete the object named by locator."""
        self.delete(self.url_for(locator))
