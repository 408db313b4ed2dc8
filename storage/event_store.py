"""In-memory event store mirrored to a relational table and an S3 snapshot."""
import json
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Union

from processor.event_processor import EventProcessor, InvalidEventError
from processor.models import (
    DRAFT_FIELDS,
    EventDraft,
    EventRecord,
    normalize_field_names,
    sort_events,
)

logger = logging.getLogger(__name__)

DEFAULT_SEED_PATH = Path(__file__).parent / 'events.seed.json'


class EventStore:
    """
    Owner of the authoritative event list.

    The in-memory cache is the source of truth. It is seeded once, lazily, on
    first access: from the relational store, else from the latest snapshot,
    else from the bundled seed file. Every mutation is applied to the cache
    first and is visible to readers immediately; the full list is then queued
    for the relational and snapshot mirrors. Mirror writes are best-effort and
    independent: a failing mirror is logged and never undoes the mutation or
    the other mirror's write.
    """

    def __init__(
        self,
        relational=None,
        snapshot=None,
        seed_path: Optional[Union[str, Path]] = DEFAULT_SEED_PATH,
        processor: Optional[EventProcessor] = None,
        wait_for_mirrors: bool = False
    ):
        """
        Args:
            relational: RelationalMirror (or None to disable)
            snapshot: BlobSnapshot (or None to disable)
            seed_path: Bundled seed used when no mirror can be read
            processor: Validator for drafts and seeded records
            wait_for_mirrors: Block each mutation until its mirror writes finish
        """
        self.relational = relational
        self.snapshot = snapshot
        self.seed_path = Path(seed_path) if seed_path else None
        self.processor = processor or EventProcessor()
        self.wait_for_mirrors = wait_for_mirrors

        self._lock = threading.RLock()
        self._events: Optional[List[EventRecord]] = None
        # One worker keeps mirror writes in mutation order.
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='event-mirror')

    # -- reads ----------------------------------------------------------------

    def list(self) -> List[EventRecord]:
        """All events ordered by (date, time)."""
        with self._lock:
            self._ensure_seeded()
            return list(self._events)

    def get(self, event_id: str) -> Optional[EventRecord]:
        with self._lock:
            self._ensure_seeded()
            for event in self._events:
                if event.id == event_id:
                    return event
            return None

    # -- mutations ------------------------------------------------------------

    def create(self, draft: Union[EventDraft, Mapping]) -> EventRecord:
        """
        Validate a draft, assign it a fresh id and add it.

        Raises:
            InvalidEventError: If the draft cannot become a canonical record
        """
        if not isinstance(draft, EventDraft):
            draft = EventDraft.from_dict(draft)

        with self._lock:
            self._ensure_seeded()
            existing = {event.id for event in self._events}
            event_id = str(uuid.uuid4())
            while event_id in existing:
                event_id = str(uuid.uuid4())

            record = self.processor.build_record(draft, event_id=event_id)
            future = self._commit(self._events + [record])

        logger.info(f"Created event {record.id} '{record.name}'")
        self._maybe_wait(future)
        return record

    def update(self, event_id: str, patch: Union[EventDraft, Mapping]) -> Optional[EventRecord]:
        """
        Merge the given fields onto an event; other fields are untouched.

        Returns:
            The updated record, or None if no event has this id

        Raises:
            InvalidEventError: If the patch names unknown fields or the merged
                record is invalid
        """
        changes = self._patch_fields(patch)

        with self._lock:
            self._ensure_seeded()
            index = next((i for i, e in enumerate(self._events) if e.id == event_id), None)
            if index is None:
                return None

            fields = asdict(self._events[index])
            fields.pop('id')
            fields.update(changes)
            updated = self.processor.build_record(EventDraft(**fields), event_id=event_id)

            events = list(self._events)
            events[index] = updated
            future = self._commit(events)

        logger.info(f"Updated event {event_id}: {sorted(changes)}")
        self._maybe_wait(future)
        return updated

    def delete(self, event_id: str) -> bool:
        """
        Remove an event.

        Returns:
            True if an event was removed, False if the id was unknown
        """
        with self._lock:
            self._ensure_seeded()
            remaining = [event for event in self._events if event.id != event_id]
            if len(remaining) == len(self._events):
                return False
            future = self._commit(remaining)

        logger.info(f"Deleted event {event_id}")
        self._maybe_wait(future)
        return True

    def replace_all(self, records: Iterable[EventRecord]) -> List[EventRecord]:
        """
        Replace every event with a validated, sorted copy of the given list.

        Invalid records and repeated ids are dropped.

        Returns:
            The stored list
        """
        accepted = []
        seen = set()
        for record in self.processor.process_records(records):
            if record.id in seen:
                logger.warning(f"Dropping duplicate event id {record.id}")
                continue
            seen.add(record.id)
            accepted.append(record)

        with self._lock:
            # An overwrite makes seeding moot.
            future = self._commit(accepted)
            stored = list(self._events)

        logger.info(f"Replaced all events ({len(stored)} stored)")
        self._maybe_wait(future)
        return stored

    # -- lifecycle ------------------------------------------------------------

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every mirror write queued so far has finished."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    # -- internals ------------------------------------------------------------

    def _commit(self, events: List[EventRecord]) -> Future:
        """Swap in a new sorted list and queue it for the mirrors. Caller holds the lock."""
        self._events = sort_events(events)
        return self._executor.submit(self._write_mirrors, list(self._events))

    def _maybe_wait(self, future: Future) -> None:
        if self.wait_for_mirrors:
            future.result()

    def _write_mirrors(self, events: List[EventRecord]) -> None:
        if self.relational is not None:
            try:
                self.relational.replace_all(events)
            except Exception as e:
                logger.error(f"Relational mirror write failed: {e}", exc_info=True)

        if self.snapshot is not None:
            try:
                self.snapshot.write(events)
            except Exception as e:
                logger.error(f"Snapshot mirror write failed: {e}", exc_info=True)

    def _patch_fields(self, patch: Union[EventDraft, Mapping]) -> dict:
        if isinstance(patch, EventDraft):
            return {name: value for name, value in asdict(patch).items() if value is not None}

        changes = normalize_field_names(patch)
        changes.pop('id', None)
        unknown = sorted(set(changes) - set(DRAFT_FIELDS))
        if unknown:
            raise InvalidEventError({name: 'unknown field' for name in unknown})
        return changes

    def _ensure_seeded(self) -> None:
        """Seed the cache once. Caller holds the lock."""
        if self._events is not None:
            return
        self._events = sort_events(self.processor.process_records(self._load_initial()))
        logger.info(f"Seeded event cache with {len(self._events)} events")

    def _load_initial(self) -> List[EventRecord]:
        if self.relational is not None:
            try:
                return self.relational.load_all()
            except Exception as e:
                logger.warning(f"Relational store unavailable for seeding: {e}")

        if self.snapshot is not None:
            try:
                records = self.snapshot.read()
                if records is not None:
                    return records
            except Exception as e:
                logger.warning(f"Snapshot unavailable for seeding: {e}")

        return self._load_seed_file()

    def _load_seed_file(self) -> List[EventRecord]:
        if self.seed_path is None or not self.seed_path.exists():
            logger.warning("No bundled seed available, starting empty")
            return []

        with self.seed_path.open(encoding='utf-8') as f:
            data = json.load(f)

        records = []
        for item in data:
            try:
                records.append(EventRecord.from_dict(item))
            except (KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed seed entry: {e}")
        return records
