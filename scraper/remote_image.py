"""Validated download of remote images."""
import logging
import re
import time
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

import requests
from urllib3.exceptions import ReadTimeoutError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
IMAGE_TIMEOUT_SECONDS = 10
UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9_.-]')


class ImageFetchError(Exception):
    """Rejection of a remote image, with one specific reason."""

    INVALID_URL = 'invalid_url'
    BAD_STATUS = 'bad_status'
    NOT_IMAGE = 'not_image'
    TOO_LARGE = 'too_large'
    TIMEOUT = 'timeout'
    NETWORK = 'network'

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


@dataclass
class FetchedImage:
    """Downloaded image payload."""
    content: bytes
    filename: str
    content_type: str
    size: int
    source_url: str


def safe_filename(url: str, default: str = 'image') -> str:
    """Basename of the URL path, restricted to [a-zA-Z0-9_.-]."""
    basename = unquote(urlparse(url).path).rsplit('/', 1)[-1]
    return UNSAFE_FILENAME_CHARS.sub('_', basename) or default


class RemoteImageFetcher:
    """Fetches one remote image, failing fast on the first violated check."""

    CHUNK_SIZE = 64 * 1024

    def __init__(self, timeout: float = IMAGE_TIMEOUT_SECONDS, max_bytes: int = MAX_IMAGE_BYTES):
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, url: str) -> FetchedImage:
        """
        Download an image.

        Args:
            url: Absolute http(s) URL of the image

        Returns:
            FetchedImage with the bytes and a storage-safe filename

        Raises:
            ImageFetchError: For a bad URL, non-success status, non-image
                content type, oversize body, timeout or network failure
        """
        parsed = urlparse(url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ImageFetchError(ImageFetchError.INVALID_URL, 'Only HTTP/HTTPS URLs are allowed')

        deadline = time.monotonic() + self.timeout
        try:
            response = requests.get(
                url,
                headers={
                    'User-Agent': 'Mozilla/5.0 (compatible; Event Image Fetcher)',
                    'Accept': 'image/*',
                },
                timeout=self.timeout,
                stream=True
            )
        except requests.Timeout as e:
            raise ImageFetchError(ImageFetchError.TIMEOUT, 'Image fetch timed out') from e
        except requests.RequestException as e:
            raise ImageFetchError(ImageFetchError.NETWORK, f"Failed to fetch image: {e}") from e

        with response:
            return self._read_image(url, response, deadline)

    def _read_image(self, url: str, response, deadline: float) -> FetchedImage:
        if not response.ok:
            raise ImageFetchError(
                ImageFetchError.BAD_STATUS,
                f"Failed to fetch image: {response.status_code} {response.reason}"
            )

        content_type = response.headers.get('Content-Type', '')
        if not content_type.lower().startswith('image/'):
            raise ImageFetchError(ImageFetchError.NOT_IMAGE, 'URL does not point to an image file')

        content_length = response.headers.get('Content-Length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
            raise ImageFetchError(ImageFetchError.TOO_LARGE, self._too_large_message())

        chunks = []
        received = 0
        try:
            for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                received += len(chunk)
                if received > self.max_bytes:
                    raise ImageFetchError(ImageFetchError.TOO_LARGE, self._too_large_message())
                if time.monotonic() > deadline:
                    raise ImageFetchError(ImageFetchError.TIMEOUT, 'Image fetch timed out')
                chunks.append(chunk)
        except requests.RequestException as e:
            # requests reports a streaming read timeout as a ConnectionError
            if isinstance(e, requests.Timeout) or (e.args and isinstance(e.args[0], ReadTimeoutError)):
                raise ImageFetchError(ImageFetchError.TIMEOUT, 'Image fetch timed out') from e
            raise ImageFetchError(ImageFetchError.NETWORK, f"Failed to read image: {e}") from e

        content = b''.join(chunks)
        logger.info(f"Fetched image {url} ({len(content)} bytes, {content_type})")
        return FetchedImage(
            content=content,
            filename=safe_filename(url),
            content_type=content_type.split(';')[0].strip(),
            size=len(content),
            source_url=url
        )

    def _too_large_message(self) -> str:
        return f"Image too large. Maximum size is {self.max_bytes // (1024 * 1024)}MB"
