"""Best-effort import of a single third-party event page."""
import logging
from itertools import chain
from typing import Optional
from urllib.parse import urljoin

from processor.extractors import (
    PageDocument,
    clean_text,
    description_from_about_section,
    extract_organizer,
    merge_datetime_candidates,
    page_datetime_candidates,
    parse_start_timestamp,
    structured_image_url,
)
from processor.models import DateTimeCandidate, EventDraft
from scraper.page_fetcher import PageFetcher, PageFetchError

logger = logging.getLogger(__name__)


def _string(value) -> str:
    return clean_text(value) if isinstance(value, str) else ''


class PageImportError(Exception):
    """Raised when the event page itself cannot be retrieved."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(message)


class EventPageImporter:
    """
    Turns one event page URL into a draft for a human editor to complete.

    No field of the returned draft is guaranteed except tickets_url, which
    always points back at the source page.
    """

    def __init__(self, fetcher: Optional[PageFetcher] = None):
        self.fetcher = fetcher or PageFetcher()

    def import_event(self, url: str) -> EventDraft:
        """
        Fetch a page once and extract what it offers.

        Raises:
            PageImportError: On a network error or non-success status
        """
        try:
            page = self.fetcher.fetch(url)
        except PageFetchError as e:
            raise PageImportError(url, str(e)) from e

        draft, start = self._from_structured_data(page)
        if draft is None:
            logger.info(f"No structured event data on {url}, using page metadata")
            draft = self._from_page_metadata(page)

        self._backfill(draft, page, start)

        if draft.image:
            draft.image = urljoin(page.url or url, draft.image)
        if not draft.tickets_url:
            draft.tickets_url = url
        return draft

    def _from_structured_data(self, page: PageDocument):
        """Draft from the first event-typed JSON-LD node, or (None, None)."""
        for node in page.event_nodes:
            start = node.get('startDate') or node.get('start_date') or node.get('start_time')
            when = parse_start_timestamp(start, 'structured_data')
            draft = EventDraft(
                name=_string(node.get('name')) or None,
                description=_string(node.get('description')) or None,
                date=when.date if when else None,
                time=when.time if when else None,
                image=structured_image_url(node.get('image')) or None,
            )
            return draft, when
        return None, None

    def _from_page_metadata(self, page: PageDocument) -> EventDraft:
        title = page.meta_content('og:title')
        if not title and page.soup.title and page.soup.title.string:
            title = page.soup.title.string.strip()
        description = page.meta_content('og:description') or page.meta_content('description')
        return EventDraft(
            name=clean_text(title) or None,
            description=clean_text(description) or None,
            image=page.meta_content('og:image') or None,
        )

    def _backfill(self, draft: EventDraft, page: PageDocument,
                  start: Optional[DateTimeCandidate]) -> None:
        if not draft.organizer:
            organizer = extract_organizer(page)
            if organizer:
                draft.organizer = organizer.value

        if not draft.date or not draft.time:
            when = merge_datetime_candidates(chain([start], page_datetime_candidates(page)))
            if when:
                draft.date = when.date
                draft.time = when.time

        if not draft.description:
            about = description_from_about_section(page)
            if about:
                draft.description = about.value
