"""Bounded HTTP fetching of third-party event pages."""
import logging
import time

import requests

from processor.extractors import PageDocument

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; VenueCalendarImporter/1.0)'


class PageFetchError(Exception):
    """Raised when a page cannot be fetched."""

    def __init__(self, url: str, message: str, status_code: int = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class PageFetcher:
    """Fetches event pages with a fixed timeout and optional retries."""

    def __init__(self, timeout: int = 15, max_retries: int = 1, base_delay: float = 1):
        """
        Initialize the page fetcher.

        Args:
            timeout: HTTP request timeout in seconds (default: 15)
            max_retries: Attempts per page, including the first (default: 1)
            base_delay: Initial backoff delay between attempts in seconds
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay

    def fetch(self, url: str) -> PageDocument:
        """
        Fetch a page and parse it.

        Args:
            url: Absolute page URL

        Returns:
            PageDocument for the response body

        Raises:
            PageFetchError: If every attempt fails or returns a non-success status
        """
        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries})")
                response = requests.get(
                    url,
                    headers={'User-Agent': USER_AGENT},
                    timeout=self.timeout
                )
                response.raise_for_status()
                return PageDocument(response.text, url=response.url or url)

            except requests.RequestException as e:
                if attempt < self.max_retries - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        f"Request for {url} failed (attempt {attempt + 1}/{self.max_retries}): "
                        f"{e}. Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    status_code = getattr(e.response, 'status_code', None)
                    logger.warning(f"Failed to fetch {url}: {e}")
                    raise PageFetchError(url, f"Fetch failed: {e}", status_code) from e

    def try_fetch(self, url: str):
        """Fetch a page, returning None instead of raising on failure."""
        try:
            return self.fetch(url)
        except PageFetchError:
            return None
