"""
Raw file downloads for CDE and CAASPP endpoints

Downloads a URL into memory and checks that what came back is the kind of
file we asked for. Three failure modes are kept distinct:

    TransportError     - connection failure or timeout (retryable)
    UpstreamRejection  - HTTP error status, or a 200 whose body is an HTML
                         block page / truncated file instead of data
    (success)          - raw bytes, unparsed

Every request carries a descriptive User-Agent; some CDE endpoints reject
anonymous clients with a firewall page.

Usage:
    from caschooldata.fetcher import download, extract_zip_member

    content = download(url, expected="text", min_size=100_000, timeout=300)
"""

import io
import logging
import re
import time
import zipfile
from typing import Optional

import requests

from caschooldata.common import Settings, get_settings
from caschooldata.errors import ParseError, TransportError, UpstreamRejection

logger = logging.getLogger(__name__)

ZIP_MAGIC = b'PK\x03\x04'   # also the signature of .xlsx workbooks
HTML_MARKERS = (b'<!doctype html', b'<html', b'<head', b'<?xml')
RETRY_BACKOFF_SECONDS = 2.0

EXPECTED_KINDS = ("text", "xlsx", "zip")


def looks_like_html(content: bytes) -> bool:
    """
    Check whether a response body is an HTML page

    Examples:
        >>> looks_like_html(b'  <!DOCTYPE html><html>...')
        True
        >>> looks_like_html(b'Academic Year\\tAggregate Level\\n')
        False
    """
    head = content[:512].lstrip().lower()
    return any(head.startswith(marker) for marker in HTML_MARKERS)


def check_signature(content: bytes, expected: str, url: str,
                    content_type: str = "", min_size: int = 0):
    """
    Verify a downloaded body is the expected file type

    Args:
        content: Response body
        expected: "text", "xlsx" or "zip"
        url: Source URL (for the error message)
        content_type: Response Content-Type header
        min_size: Smallest plausible size in bytes for this file

    Raises:
        UpstreamRejection: If the body is an HTML page, lacks the expected
            magic bytes, or is smaller than min_size
    """
    if expected not in EXPECTED_KINDS:
        raise ValueError(f"expected must be one of {EXPECTED_KINDS}, got {expected!r}")

    if 'text/html' in content_type.lower() or looks_like_html(content):
        raise UpstreamRejection(
            f"Got an HTML page instead of data from {url} (content-type: {content_type or 'unknown'})",
            url=url, status_code=200, content_type=content_type,
        )

    if expected in ("xlsx", "zip") and content[:4] != ZIP_MAGIC:
        raise UpstreamRejection(
            f"Response from {url} is not a {expected} file (bad signature {content[:4]!r})",
            url=url, status_code=200, content_type=content_type,
        )

    if len(content) < min_size:
        raise UpstreamRejection(
            f"Response from {url} is too small to be a data file "
            f"({len(content):,} bytes, expected at least {min_size:,})",
            url=url, status_code=200, content_type=content_type,
        )


def _get(url: str, settings: Settings, timeout: float) -> requests.Response:
    """One GET attempt, with requests errors translated."""
    headers = {
        'User-Agent': settings.user_agent,
        'Accept': '*/*',
    }
    try:
        response = requests.get(url, headers=headers, timeout=timeout, stream=True)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransportError(f"Could not reach {url}: {e}", url=url) from e
    except requests.exceptions.RequestException as e:
        raise TransportError(f"Request to {url} failed: {e}", url=url) from e

    if response.status_code >= 400:
        response.close()
        raise UpstreamRejection(
            f"HTTP {response.status_code} from {url}",
            url=url,
            status_code=response.status_code,
            content_type=response.headers.get('content-type', ''),
        )

    return response


def _read_body(response: requests.Response, url: str) -> bytes:
    buffer = io.BytesIO()
    try:
        for chunk in response.iter_content(chunk_size=65536):
            if chunk:
                buffer.write(chunk)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
            requests.exceptions.ChunkedEncodingError) as e:
        raise TransportError(f"Connection dropped while reading {url}: {e}", url=url) from e
    finally:
        response.close()
    return buffer.getvalue()


def download(
    url: str,
    expected: str = "text",
    min_size: int = 0,
    timeout: Optional[float] = None,
    settings: Optional[Settings] = None,
) -> bytes:
    """
    Download a URL and validate the body

    Transport failures are retried ``settings.retries`` times (default once)
    with a short pause. HTTP errors and block pages are not retried.

    Args:
        url: URL to download
        expected: "text", "xlsx" or "zip"
        min_size: Smallest plausible body size in bytes
        timeout: Request timeout in seconds (settings.timeout overrides)
        settings: Settings (resolved from the environment if omitted)

    Returns:
        Response body

    Raises:
        TransportError: Network failure after the bounded retries
        UpstreamRejection: Error status, block page or truncated body
    """
    settings = settings or get_settings()
    timeout = settings.timeout or timeout or 120
    attempts = max(1, settings.retries + 1)

    for attempt in range(1, attempts + 1):
        try:
            logger.info(f"Downloading: {url}")
            response = _get(url, settings, timeout)
            content = _read_body(response, url)
            break
        except TransportError as e:
            if attempt >= attempts:
                logger.error(f"✗ Download failed: {e}")
                raise
            logger.warning(f"Attempt {attempt}/{attempts} failed ({e}); retrying")
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)

    check_signature(
        content, expected, url,
        content_type=response.headers.get('content-type', ''),
        min_size=min_size,
    )
    logger.info(f"✓ Downloaded {len(content) / 1024 / 1024:.1f} MB from {url}")
    return content


def extract_zip_member(content: bytes, pattern: str, url: str = "") -> bytes:
    """
    Return the first archive member whose name matches a regex

    Args:
        content: Zip archive bytes
        pattern: Regular expression matched against member names
        url: Source URL (for error messages)

    Raises:
        ParseError: If the archive is unreadable or nothing matches
    """
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = archive.namelist()
            regex = re.compile(pattern, re.IGNORECASE)
            for name in names:
                if regex.search(name):
                    logger.debug(f"Extracting {name} from {url or 'archive'}")
                    return archive.read(name)
    except zipfile.BadZipFile as e:
        raise ParseError(f"Corrupt zip archive from {url or 'download'}: {e}") from e

    raise ParseError(
        f"No member matching {pattern!r} in archive from {url or 'download'} "
        f"(members: {', '.join(names)})"
    )
