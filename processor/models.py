"""Data models for the event calendar core."""
from dataclasses import asdict, dataclass, field
from datetime import date as date_cls
from datetime import datetime, time as time_cls
from typing import Any, Dict, List, Mapping, Optional

# A record whose time is unknown carries this instead of a wall-clock value.
UNSPECIFIED_TIME = None

# Sort/compare stand-in for UNSPECIFIED_TIME: after every real time of the day.
END_OF_DAY_SORT = '24:00'
END_OF_DAY = time_cls(23, 59)

DRAFT_FIELDS = (
    'name', 'date', 'time', 'organizer', 'image', 'tickets_url', 'description'
)

# Boundary (JSON) key -> attribute name.
FIELD_ALIASES = {
    'ticketsUrl': 'tickets_url',
    'planner': 'organizer',
}


def normalize_field_names(data: Mapping[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in data.items():
        normalized[FIELD_ALIASES.get(key, key)] = value
    return normalized


@dataclass
class EventDraft:
    """Partial event as produced by a source adapter. Every field is optional."""
    name: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    organizer: Optional[str] = None
    image: Optional[str] = None
    tickets_url: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'EventDraft':
        values = normalize_field_names(data)
        return cls(**{name: values.get(name) for name in DRAFT_FIELDS})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['ticketsUrl'] = data.pop('tickets_url')
        return data


@dataclass(frozen=True)
class EventRecord:
    """Canonical, validated event. Identity is the id alone."""
    id: str
    name: str
    date: str
    time: Optional[str] = UNSPECIFIED_TIME
    organizer: str = ''
    image: str = ''
    tickets_url: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'EventRecord':
        """
        Build a record from its boundary (JSON) form.

        Raises:
            KeyError: If id, name or date is missing
        """
        values = normalize_field_names(data)
        return cls(
            id=str(values['id']),
            name=values['name'],
            date=values['date'],
            time=values.get('time') or UNSPECIFIED_TIME,
            organizer=values.get('organizer') or '',
            image=values.get('image') or '',
            tickets_url=values.get('tickets_url') or None,
            description=values.get('description') or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'date': self.date,
            'time': self.time,
            'organizer': self.organizer,
            'image': self.image,
            'ticketsUrl': self.tickets_url,
            'description': self.description,
        }


@dataclass(frozen=True)
class DateTimeCandidate:
    """Best-effort date/time guess. Either part may be missing."""
    date: Optional[str]
    time: Optional[str]
    strategy: str


@dataclass(frozen=True)
class ExtractionCandidate:
    """Best-effort guess at a single text field."""
    value: str
    strategy: str


@dataclass
class RowResult:
    """Outcome of one accepted bulk row."""
    index: int
    action: str
    event: Dict[str, Any]


@dataclass
class RowError:
    """Reported failure for one bulk row."""
    index: int
    message: str


@dataclass
class BulkImportResult:
    """Result of a bulk import run."""
    results: List[RowResult] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'count': self.count,
            'results': [asdict(result) for result in self.results],
            'errors': [asdict(error) for error in self.errors],
        }


def sort_key(record: EventRecord) -> tuple:
    """Listing order key: (date, time) with unspecified times last in the day."""
    return (record.date, record.time or END_OF_DAY_SORT)


def sort_events(records) -> List[EventRecord]:
    return sorted(records, key=sort_key)


def event_datetime(record: EventRecord) -> datetime:
    """
    Wall-clock start of an event.

    An unspecified time counts as the end of the event day so that same-day
    events are not classified as past too early.
    """
    day = date_cls.fromisoformat(record.date)
    if record.time is UNSPECIFIED_TIME:
        return datetime.combine(day, END_OF_DAY)
    hour, minute = (int(part) for part in record.time.split(':')[:2])
    return datetime.combine(day, time_cls(hour, minute))


def is_past_event(record: EventRecord, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now()
    return event_datetime(record) < now


def format_event_time(record: EventRecord) -> str:
    """12-hour display time, or an empty string when the time is unspecified."""
    if record.time is UNSPECIFIED_TIME:
        return ''
    hour, minute = (int(part) for part in record.time.split(':')[:2])
    suffix = 'AM' if hour < 12 else 'PM'
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {suffix}"
