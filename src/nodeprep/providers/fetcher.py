"""Download remote artifacts onto the node."""
from __future__ import annotations

import hashlib
import http.client
import logging
import os
import ssl
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import IO

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
USER_AGENT = "nodeprep"


class FetchError(RuntimeError):
    """Raised when an artifact cannot be downloaded to its destination."""

    def __init__(self, source: str, destination: Path | None, reason: str) -> None:
        """Record where the download came from, where it was going and why it failed."""
        target = f" to {destination}" if destination is not None else ""
        super().__init__(f"Failed to fetch {source}{target}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a completed download."""

    source: str
    destination: Path
    size: int
    sha256: str
    verified: bool = False


def _ssl_context(insecure: bool) -> ssl.SSLContext:
    if insecure:
        return ssl._create_unverified_context()  # noqa: S323
    cert_file = os.environ.get("SSL_CERT_FILE")
    if cert_file and Path(cert_file).is_file():
        return ssl.create_default_context(cafile=cert_file)
    return ssl.create_default_context()


def _describe(exc: http.client.HTTPException) -> str:
    if isinstance(exc, http.client.IncompleteRead):
        return f"transfer ended early after {len(exc.partial)} bytes"
    return f"{type(exc).__name__}: {exc}"


def _content_length(source: str, destination: Path, raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise FetchError(source, destination, f"invalid Content-Length header {raw!r}") from exc
    if value < 0:
        raise FetchError(source, destination, f"invalid Content-Length header {raw!r}")
    return value


def _parse_digest(payload: str) -> str:
    # dl.k8s.io publishes the bare digest; other mirrors use "<digest>  <name>".
    token = payload.strip().split()[0] if payload.strip() else ""
    return token.lower()


class ArtifactFetcher:
    """Stream HTTP(S) downloads into place atomically."""

    def __init__(
        self,
        *,
        timeout: float = 120.0,
        insecure: bool = False,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """Configure the request *timeout* (seconds) and TLS verification."""
        self.timeout = timeout
        self.insecure = insecure
        self.chunk_size = chunk_size

    def fetch(
        self,
        destination: Path,
        source: str,
        *,
        expected_sha256: str | None = None,
    ) -> FetchResult:
        """Download *source* into *destination*.

        The payload is written to a hidden sibling file first and renamed into
        place only after the byte count (and, when given, the SHA-256 digest)
        has been checked, so *destination* never holds a partial download.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{destination.name}.partial-", dir=str(destination.parent)
        )
        tmp_path = Path(tmp_name)
        digest = hashlib.sha256()
        size = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                try:
                    with self._open(source) as response:
                        status = getattr(response, "status", 200)
                        if not 200 <= int(status) < 300:
                            raise FetchError(source, destination, f"HTTP status {status}")
                        expected_length = response.headers.get("Content-Length")
                        for chunk in iter(lambda: response.read(self.chunk_size), b""):
                            handle.write(chunk)
                            digest.update(chunk)
                            size += len(chunk)
                except urllib.error.HTTPError as exc:
                    raise FetchError(source, destination, f"HTTP status {exc.code}") from exc
                except urllib.error.URLError as exc:
                    raise FetchError(source, destination, str(exc.reason)) from exc
                except TimeoutError as exc:
                    raise FetchError(
                        source, destination, f"timed out after {self.timeout} seconds"
                    ) from exc
                except http.client.HTTPException as exc:
                    raise FetchError(source, destination, _describe(exc)) from exc
                except OSError as exc:
                    raise FetchError(source, destination, str(exc)) from exc
            expected_size = _content_length(source, destination, expected_length)
            if expected_size is not None and expected_size != size:
                raise FetchError(
                    source,
                    destination,
                    f"received {size} bytes, expected {expected_size}",
                )
            actual = digest.hexdigest()
            if expected_sha256 is not None and actual != expected_sha256.lower():
                raise FetchError(
                    source,
                    destination,
                    f"SHA-256 mismatch (expected {expected_sha256}, got {actual})",
                )
            os.replace(tmp_path, destination)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        LOGGER.info("Fetched %s -> %s (%d bytes)", source, destination, size)
        return FetchResult(
            source=source,
            destination=destination,
            size=size,
            sha256=actual,
            verified=expected_sha256 is not None,
        )

    def fetch_text(self, source: str) -> str:
        """Return the body of *source* decoded as UTF-8."""
        try:
            with self._open(source) as response:
                status = getattr(response, "status", 200)
                if not 200 <= int(status) < 300:
                    raise FetchError(source, None, f"HTTP status {status}")
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise FetchError(source, None, f"HTTP status {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise FetchError(source, None, str(exc.reason)) from exc
        except http.client.HTTPException as exc:
            raise FetchError(source, None, _describe(exc)) from exc
        except (TimeoutError, OSError, UnicodeDecodeError) as exc:
            raise FetchError(source, None, str(exc)) from exc

    def fetch_checksum(self, source: str) -> str:
        """Return the SHA-256 digest published at ``<source>.sha256``."""
        checksum_url = f"{source}.sha256"
        digest = _parse_digest(self.fetch_text(checksum_url))
        if len(digest) != 64 or any(char not in "0123456789abcdef" for char in digest):
            raise FetchError(checksum_url, None, "response is not a SHA-256 digest")
        return digest

    # ------------------------------------------------------------------
    def _open(self, source: str) -> IO[bytes]:
        request = urllib.request.Request(source, headers={"User-Agent": USER_AGENT})
        return urllib.request.urlopen(  # noqa: S310 - sources come from configuration
            request,
            timeout=self.timeout,
            context=_ssl_context(self.insecure),
        )


__all__ = ["ArtifactFetcher", "FetchError", "FetchResult"]
