"""Event processor for validating and normalizing event data."""
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from processor.models import DRAFT_FIELDS, UNSPECIFIED_TIME, EventDraft, EventRecord

logger = logging.getLogger(__name__)


class InvalidEventError(ValueError):
    """Raised when a draft or record cannot become a canonical event."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        detail = '; '.join(f"{name}: {message}" for name, message in errors.items())
        super().__init__(f"Invalid event ({detail})")


class EventProcessor:
    """Processor for validating and normalizing event data."""

    MAX_TITLE_LENGTH = 200
    MAX_ORGANIZER_LENGTH = 100
    MAX_DESCRIPTION_LENGTH = 2000

    def build_record(self, draft: EventDraft, event_id: str) -> EventRecord:
        """
        Validate a draft and turn it into a canonical record.

        Args:
            draft: Adapter or caller supplied draft
            event_id: Identifier to assign to the record

        Returns:
            Normalized EventRecord

        Raises:
            InvalidEventError: If a required field is missing or malformed
        """
        errors = {}
        fields = {}
        for field_name in DRAFT_FIELDS:
            value = getattr(draft, field_name)
            if value is not None and not isinstance(value, str):
                errors[field_name] = f"{field_name} must be a string"
                value = None
            fields[field_name] = (value or '').strip()

        name = fields['name']
        if not name and 'name' not in errors:
            errors['name'] = 'name is required'

        normalized_date = None
        if not fields['date']:
            errors.setdefault('date', 'date is required')
        else:
            normalized_date = self._normalize_date(fields['date'])
            if not normalized_date:
                errors['date'] = f"unrecognized date '{draft.date}'"

        normalized_time = UNSPECIFIED_TIME
        if fields['time']:
            normalized_time = self._normalize_time(fields['time'])
            if not normalized_time:
                errors['time'] = f"unrecognized time '{draft.time}'"

        if errors:
            raise InvalidEventError(errors)

        return EventRecord(
            id=event_id,
            name=name[:self.MAX_TITLE_LENGTH],
            date=normalized_date,
            time=normalized_time,
            organizer=fields['organizer'][:self.MAX_ORGANIZER_LENGTH],
            image=fields['image'],
            tickets_url=fields['tickets_url'] or None,
            description=fields['description'][:self.MAX_DESCRIPTION_LENGTH] or None,
        )

    def normalize_record(self, record: EventRecord) -> EventRecord:
        """Re-validate an existing record, keeping its id."""
        fields = asdict(record)
        event_id = fields.pop('id')
        if not event_id:
            raise InvalidEventError({'id': 'id is required'})
        return self.build_record(EventDraft(**fields), event_id=event_id)

    def process_records(self, records: Iterable[EventRecord]) -> List[EventRecord]:
        """
        Normalize a batch of records, dropping the ones that fail validation.

        Args:
            records: Records from a seed, snapshot or bulk overwrite

        Returns:
            List of valid, normalized records
        """
        processed = []
        total = 0

        for record in records:
            total += 1
            try:
                processed.append(self.normalize_record(record))
            except InvalidEventError as e:
                logger.warning(f"Dropping invalid event '{record.id}': {e}")
                continue

        logger.info(f"Processed {len(processed)} valid events out of {total} total events")
        return processed

    def _normalize_date(self, date_str: str) -> Optional[str]:
        """
        Normalize date to ISO 8601 format (YYYY-MM-DD).

        Args:
            date_str: Date string in various formats

        Returns:
            ISO 8601 formatted date string or None if parsing fails
        """
        date_formats = [
            '%Y-%m-%d',      # ISO 8601
            '%m/%d/%Y',      # US format
            '%m-%d-%Y',      # US format with dashes
            '%B %d, %Y',     # Full month name
            '%b %d, %Y',     # Abbreviated month name
            '%Y/%m/%d',      # Alternative ISO format
        ]

        for fmt in date_formats:
            try:
                date_obj = datetime.strptime(date_str.strip(), fmt)
                return date_obj.strftime('%Y-%m-%d')
            except ValueError:
                continue

        return None

    def _normalize_time(self, time_str: str) -> Optional[str]:
        """
        Normalize time to 24-hour format (HH:MM).

        Args:
            time_str: Time string in various formats

        Returns:
            24-hour formatted time string or None if parsing fails
        """
        time_formats = [
            '%H:%M',         # 24-hour format
            '%I:%M %p',      # 12-hour format with AM/PM
            '%I:%M%p',       # 12-hour format without space
            '%H:%M:%S',      # 24-hour with seconds
            '%I:%M:%S %p',   # 12-hour with seconds and AM/PM
        ]

        time_str = time_str.strip()

        for fmt in time_formats:
            try:
                time_obj = datetime.strptime(time_str, fmt)
                return time_obj.strftime('%H:%M')
            except ValueError:
                continue

        return None
