"""Relational mirror of the event list (SQLAlchemy)."""
import logging
from typing import List

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from processor.models import EventRecord

logger = logging.getLogger(__name__)

metadata = MetaData()

events_table = Table(
    'events',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('position', Integer, nullable=False),
    Column('name', Text, nullable=False),
    Column('date', String(10), nullable=False),
    Column('time', String(5), nullable=True),
    Column('organizer', Text, nullable=False, default=''),
    Column('image', Text, nullable=False, default=''),
    Column('tickets_url', Text, nullable=True),
    Column('description', Text, nullable=True),
)


class MirrorError(Exception):
    """Raised when the relational store cannot be read or written."""


def create_mirror_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine for a database URL; SQLite shares one connection across threads."""
    if database_url.startswith('sqlite'):
        return create_engine(
            database_url,
            echo=echo,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class RelationalMirror:
    """
    Full-table replace and full-table read of the events table.

    The table is never patched row by row; every write replaces it inside a
    single transaction.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables_checked = False
        logger.info(f"Initialized RelationalMirror on {engine.url.drivername}")

    @classmethod
    def from_url(cls, database_url: str) -> 'RelationalMirror':
        return cls(create_mirror_engine(database_url))

    def replace_all(self, records: List[EventRecord]) -> int:
        """
        Replace the table contents with the given ordered list.

        Returns:
            Number of rows written

        Raises:
            MirrorError: If the transaction fails (it is rolled back)
        """
        rows = [self._record_to_row(position, record) for position, record in enumerate(records)]
        try:
            self._ensure_tables()
            with self.engine.begin() as conn:
                conn.execute(delete(events_table))
                if rows:
                    conn.execute(insert(events_table), rows)
        except SQLAlchemyError as e:
            raise MirrorError(f"Failed to replace events table: {e}") from e

        logger.info(f"Wrote {len(rows)} events to relational store")
        return len(rows)

    def load_all(self) -> List[EventRecord]:
        """
        Read the whole table back in stored order.

        Raises:
            MirrorError: If the query fails
        """
        query = select(events_table).order_by(events_table.c.position)
        try:
            self._ensure_tables()
            with self.engine.connect() as conn:
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as e:
            raise MirrorError(f"Failed to read events table: {e}") from e

        records = [self._row_to_record(row) for row in rows]
        logger.info(f"Read {len(records)} events from relational store")
        return records

    def _ensure_tables(self) -> None:
        if not self._tables_checked:
            metadata.create_all(self.engine)
            self._tables_checked = True

    def _record_to_row(self, position: int, record: EventRecord) -> dict:
        return {
            'id': record.id,
            'position': position,
            'name': record.name,
            'date': record.date,
            'time': record.time,
            'organizer': record.organizer,
            'image': record.image,
            'tickets_url': record.tickets_url,
            'description': record.description,
        }

    def _row_to_record(self, row) -> EventRecord:
        return EventRecord(
            id=row['id'],
            name=row['name'],
            date=row['date'],
            time=row['time'],
            organizer=row['organizer'] or '',
            image=row['image'] or '',
            tickets_url=row['tickets_url'],
            description=row['description'],
        )
