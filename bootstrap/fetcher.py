"""Integrity-checked artifact download that retries until it succeeds.

At boot nothing can act on a failed download, so :meth:`ArtifactFetcher.fetch`
has no failure return: it cycles through every mirror and transport, waits,
and starts over until the file it wrote matches the expected SHA-256 digest.
"""

import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Union

import httpx
import requests
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from api.models import SHA256_HEX_PATTERN
from bootstrap.errors import FetchCancelledError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 20.0
# Stalled transfers are abandoned and retried.
READ_TIMEOUT_SECONDS = 300.0
TRANSPORT_RETRIES = 6
TRANSPORT_RETRY_DELAY_SECONDS = 10.0
RETRY_PASS_INTERVAL_SECONDS = 60.0

CHUNK_SIZE = 64 * 1024

# Malformed URLs; requests exceptions otherwise all derive from OSError.
PERMANENT_REQUESTS_ERRORS = (
    requests.exceptions.URLRequired,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidURL,
)


class DownloadError(Exception):
    """A transport gave up on a URL after its bounded retries."""


def is_retryable_status(status_code: int) -> bool:
    """Request timeouts, throttling and server errors; other statuses are final."""
    return status_code in (408, 429) or status_code >= 500


def file_sha256(path: Path) -> str:
    """Lowercase hex SHA-256 of the file at ``path``."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class Transport(ABC):
    """One way of fetching a URL to a file, with bounded retries of its own.

    Any of ``download_errors`` ends the attempt with :class:`DownloadError`;
    only the ones :meth:`is_transient` accepts are retried first.
    """

    name = "transport"
    download_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(
        self,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        retries: int = TRANSPORT_RETRIES,
        retry_delay: float = TRANSPORT_RETRY_DELAY_SECONDS,
    ):
        self.connect_timeout = connect_timeout
        self.retries = retries
        self.retry_delay = retry_delay

    @abstractmethod
    def _download(self, url: str, destination: Path) -> None:
        """Write the body of ``url`` to ``destination`` or raise."""

    def is_transient(self, error: BaseException) -> bool:
        return isinstance(error, OSError)

    def download(self, url: str, destination: Path) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception(self.is_transient),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._download(url, destination)
        except self.download_errors as e:
            raise DownloadError(f"{self.name} failed to download {url}: {e}") from e

    def _log_retry(self, retry_state) -> None:
        logger.info(
            "%s: attempt %d failed (%s), retrying in %.0fs",
            self.name,
            retry_state.attempt_number,
            retry_state.outcome.exception(),
            self.retry_delay,
        )


class HttpxTransport(Transport):
    """Preferred transport; negotiates compressed transfer and decodes it."""

    name = "httpx"
    # InvalidURL is not an HTTPError.
    download_errors = (httpx.HTTPError, httpx.InvalidURL, OSError)

    def is_transient(self, error: BaseException) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            return is_retryable_status(error.response.status_code)
        if isinstance(error, httpx.UnsupportedProtocol):
            return False
        return isinstance(error, (httpx.TransportError, OSError))

    def _download(self, url: str, destination: Path) -> None:
        timeout = httpx.Timeout(READ_TIMEOUT_SECONDS, connect=self.connect_timeout)
        headers = {"Accept-Encoding": "gzip, deflate"}
        with httpx.Client(timeout=timeout, follow_redirects=True, headers=headers) as client:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                with open(destination, "wb") as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        f.write(chunk)


class RequestsTransport(Transport):
    """Fallback transport; plain uncompressed transfer."""

    name = "requests"
    download_errors = (requests.RequestException, OSError)

    def is_transient(self, error: BaseException) -> bool:
        if isinstance(error, requests.HTTPError):
            return error.response is not None and is_retryable_status(error.response.status_code)
        if isinstance(error, PERMANENT_REQUESTS_ERRORS):
            return False
        return isinstance(error, OSError)

    def _download(self, url: str, destination: Path) -> None:
        with requests.get(
            url,
            stream=True,
            timeout=(self.connect_timeout, READ_TIMEOUT_SECONDS),
            headers={"Accept-Encoding": "identity"},
        ) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in response.iter_content(CHUNK_SIZE):
                    f.write(chunk)


def default_transports(
    connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
    retries: int = TRANSPORT_RETRIES,
    retry_delay: float = TRANSPORT_RETRY_DELAY_SECONDS,
) -> list[Transport]:
    """Transports in preference order."""
    return [
        HttpxTransport(connect_timeout, retries, retry_delay),
        RequestsTransport(connect_timeout, retries, retry_delay),
    ]


class ArtifactFetcher:
    """Downloads a file from mirrors until its checksum matches.

    Not safe for concurrent use against the same destination.
    """

    def __init__(
        self,
        transports: Optional[Sequence[Transport]] = None,
        pass_interval: float = RETRY_PASS_INTERVAL_SECONDS,
    ):
        self.transports = list(transports) if transports is not None else default_transports()
        if not self.transports:
            raise ValueError("At least one transport is required")
        self.pass_interval = pass_interval

    def fetch(
        self,
        destination_path: Union[str, Path],
        expected_checksum: str,
        mirror_urls: Sequence[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Block until ``destination_path`` holds a file with ``expected_checksum``.

        Retries forever unless ``cancel_event`` is set, in which case
        :class:`FetchCancelledError` is raised at the next wait between passes.
        """
        if not mirror_urls:
            raise ValueError(f"No mirror URLs given for {destination_path}")
        if not SHA256_HEX_PATTERN.match(expected_checksum):
            raise ValueError(
                f"Invalid SHA-256 checksum {expected_checksum!r}: expected 64 lowercase hex characters"
            )

        destination = Path(destination_path)
        if destination.exists():
            actual = file_sha256(destination)
            if actual == expected_checksum:
                logger.info("== %s already present with SHA256 %s ==", destination, actual)
                return
            logger.info(
                "== %s has SHA256 %s, expected %s; removing ==", destination, actual, expected_checksum
            )
            destination.unlink()

        destination.parent.mkdir(parents=True, exist_ok=True)
        cancel_event = cancel_event or threading.Event()

        pass_number = 0
        while True:
            pass_number += 1
            for url in mirror_urls:
                for transport in self.transports:
                    if self._attempt(transport, url, destination, expected_checksum):
                        return

            logger.warning(
                "== All downloads of %s failed (pass %d); retrying in %.0fs ==",
                destination.name,
                pass_number,
                self.pass_interval,
            )
            if cancel_event.wait(self.pass_interval):
                raise FetchCancelledError(f"Download of {destination} cancelled after {pass_number} passes")

    def _attempt(self, transport: Transport, url: str, destination: Path, expected_checksum: str) -> bool:
        logger.info("Downloading %s using %s", url, transport.name)
        try:
            transport.download(url, destination)
        except DownloadError as e:
            logger.warning("%s", e)
            destination.unlink(missing_ok=True)
            return False

        if not destination.exists():
            logger.warning("%s reported success for %s but wrote no file", transport.name, url)
            return False

        actual = file_sha256(destination)
        if actual != expected_checksum:
            logger.warning(
                "== Hash validation of %s failed: got %s, expected %s. Retrying. ==",
                url,
                actual,
                expected_checksum,
            )
            destination.unlink()
            return False

        logger.info("== Downloaded %s (SHA256 = %s) ==", url, actual)
        return True
