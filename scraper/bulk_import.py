"""Bulk import of events from a spreadsheet export (CSV)."""
import csv
import io
import logging
from dataclasses import dataclass
from itertools import chain
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional
from urllib.parse import urljoin

from processor.event_processor import InvalidEventError
from processor.extractors import (
    PageDocument,
    clean_text,
    combine_descriptions,
    datetime_from_csv_timestamp,
    extract_image,
    merge_datetime_candidates,
    page_datetime_candidates,
)
from processor.models import BulkImportResult, EventDraft, RowError, RowResult
from scraper.page_fetcher import PageFetcher

logger = logging.getLogger(__name__)

TITLE_COLUMN = 'Title'
START_DATE_COLUMN = 'Start Date'
EXTERNAL_LINK_COLUMN = 'External Link'
SHORT_DESCRIPTION_COLUMN = 'Short Description'
DESCRIPTION_COLUMN = 'Description'


class BulkImportError(Exception):
    """Raised when the bulk input as a whole cannot be read."""


@dataclass
class BulkRow:
    """One spreadsheet row with the columns the importer understands."""
    title: Optional[str] = None
    start_date: Optional[str] = None
    external_link: Optional[str] = None
    short_description: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_mapping(cls, row: Mapping[Optional[str], Optional[str]]) -> 'BulkRow':
        """Look columns up by name; a missing column reads as None."""
        columns = {}
        for key, value in row.items():
            if isinstance(key, str) and isinstance(value, str):
                columns[key.lstrip('\ufeff').strip().lower()] = value

        def column(name):
            return columns.get(name.lower())

        return cls(
            title=column(TITLE_COLUMN),
            start_date=column(START_DATE_COLUMN),
            external_link=column(EXTERNAL_LINK_COLUMN),
            short_description=column(SHORT_DESCRIPTION_COLUMN),
            description=column(DESCRIPTION_COLUMN),
        )


def parse_csv(text: str) -> List[BulkRow]:
    """
    Parse CSV text with a header row.

    Raises:
        BulkImportError: If the text is not readable CSV
    """
    try:
        reader = csv.DictReader(io.StringIO(text))
        rows = [row for row in reader if any((value or '').strip() for value in row.values()
                                             if isinstance(value, str))]
    except csv.Error as e:
        raise BulkImportError(f"Unreadable CSV: {e}") from e
    return [BulkRow.from_mapping(row) for row in rows]


def read_csv_file(path) -> List[BulkRow]:
    """
    Read a CSV file from disk.

    Raises:
        BulkImportError: If the file is missing or cannot be decoded
    """
    try:
        text = Path(path).read_text(encoding='utf-8-sig')
    except (OSError, UnicodeDecodeError) as e:
        raise BulkImportError(f"Cannot read {path}: {e}") from e
    return parse_csv(text)


class BulkEventImporter:
    """
    Turns spreadsheet rows into events, one row at a time.

    A row without a name or without a resolvable date is skipped. Any other
    failure is reported against the row index and never affects other rows.
    """

    def __init__(
        self,
        store=None,
        fetcher: Optional[PageFetcher] = None,
        image_copier: Optional[Callable[[str], str]] = None,
        default_organizer: str = ''
    ):
        """
        Args:
            store: EventStore that receives accepted rows (not needed for dry runs)
            fetcher: Fetcher for each row's external link
            image_copier: Callable that materializes a remote image URL and
                returns the stored reference
            default_organizer: Organizer given to every imported row
        """
        self.store = store
        self.fetcher = fetcher or PageFetcher()
        self.image_copier = image_copier
        self.default_organizer = default_organizer

    def import_rows(self, rows: Iterable[BulkRow], dry_run: bool = False,
                    limit: Optional[int] = None) -> BulkImportResult:
        """
        Import rows in input order.

        Args:
            rows: Parsed rows
            dry_run: Return previews without persisting
            limit: Only the first `limit` rows are considered

        Returns:
            BulkImportResult with accepted rows and reported failures
        """
        rows = list(rows)
        if limit is not None:
            rows = rows[:max(limit, 0)]
        if not dry_run and self.store is None:
            raise BulkImportError('An event store is required unless dry_run is set')

        result = BulkImportResult()
        logger.info(f"Importing {len(rows)} rows (dry_run={dry_run})")

        for index, row in enumerate(rows):
            try:
                draft = self._build_draft(index, row, result.errors, dry_run)
                if draft is None:
                    continue

                if dry_run:
                    result.results.append(RowResult(index, 'preview', draft.to_dict()))
                else:
                    record = self.store.create(draft)
                    result.results.append(RowResult(index, 'insert', record.to_dict()))

            except InvalidEventError as e:
                logger.warning(f"Row {index} rejected: {e}")
                result.errors.append(RowError(index, str(e)))
            except Exception as e:
                logger.error(f"Row {index} failed: {e}", exc_info=True)
                result.errors.append(RowError(index, f"{type(e).__name__}: {e}"))

        logger.info(
            f"Bulk import finished: {result.count} accepted, {len(result.errors)} errors"
        )
        return result

    def import_csv(self, text: str, dry_run: bool = False,
                   limit: Optional[int] = None) -> BulkImportResult:
        return self.import_rows(parse_csv(text), dry_run=dry_run, limit=limit)

    def import_file(self, path, dry_run: bool = False,
                    limit: Optional[int] = None) -> BulkImportResult:
        return self.import_rows(read_csv_file(path), dry_run=dry_run, limit=limit)

    def _build_draft(self, index: int, row: BulkRow, errors: List[RowError],
                     dry_run: bool) -> Optional[EventDraft]:
        name = clean_text(row.title)
        if not name:
            logger.debug(f"Row {index} skipped: no title")
            return None

        link = clean_text(row.external_link)
        page = self._fetch_linked_page(link) if link else None

        linked = page_datetime_candidates(page) if page is not None else []
        when = merge_datetime_candidates(
            chain([datetime_from_csv_timestamp(row.start_date)], linked)
        )
        if when is None:
            logger.info(f"Row {index} skipped: no resolvable date for '{name}'")
            return None

        image = ''
        if page is not None:
            image = self._resolve_image(index, page, link, errors, dry_run)

        return EventDraft(
            name=name,
            date=when.date,
            time=when.time,
            organizer=self.default_organizer,
            image=image,
            tickets_url=link or None,
            description=combine_descriptions(row.short_description, row.description) or None,
        )

    def _fetch_linked_page(self, link: str) -> Optional[PageDocument]:
        page = self.fetcher.try_fetch(link)
        if page is None:
            logger.warning(f"Linked page unavailable, continuing without it: {link}")
        return page

    def _resolve_image(self, index: int, page: PageDocument, link: str,
                       errors: List[RowError], dry_run: bool) -> str:
        """
        Copy the page's image; on failure report it and keep the row.

        Dry runs copy nothing and preview the remote image URL instead.
        """
        candidate = extract_image(page)
        if candidate is None:
            return ''

        image_url = urljoin(page.url or link, candidate.value)
        if dry_run:
            return image_url
        if self.image_copier is None:
            return ''
        try:
            return self.image_copier(image_url) or ''
        except Exception as e:
            logger.warning(f"Row {index}: could not copy image {image_url}: {e}")
            errors.append(RowError(index, f"Image copy failed for {image_url}: {e}"))
            return ''
