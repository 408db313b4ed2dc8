"""
Field extractors for event pages and bulk rows.

Each strategy takes one raw input and returns a candidate or None; it never
raises on malformed input. Chains are evaluated in priority order and the
first strategy that resolves a field wins. Date/time chains are the one
exception: a winning date whose time is unspecified may take its time from a
lower-priority strategy (see merge_datetime_candidates).
"""
import html
import json
import logging
import re
from datetime import date
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from bs4 import BeautifulSoup

from processor.models import UNSPECIFIED_TIME, DateTimeCandidate, ExtractionCandidate

logger = logging.getLogger(__name__)

START_TIMESTAMP_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})(?:[T\s](\d{2}):(\d{2}))?')
CSV_TIMESTAMP_RE = re.compile(r'^(\d{4}-\d{2}-\d{2})\s+(\d{2}):(\d{2}):\d{2}$')
CLOCK_TIME_RE = re.compile(r'\b(\d{1,2}):(\d{2})\s*(AM|PM)\b', re.IGNORECASE)
ISO_TIMESTAMP_RE = re.compile(
    r'\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}(?::\d{2})?(?:[zZ]|[+\-]\d{2}:?\d{2})?'
)
BACKGROUND_IMAGE_RE = re.compile(r'background-image\s*:\s*url\(([^)]+)\)', re.IGNORECASE)
ORGANIZER_LINK_RE = re.compile(
    r'>\s*(?:Organized by|Hosted by|By)\s*<a[^>]*>([^<]+)</a>', re.IGNORECASE
)
ORGANIZER_TEXT_RE = re.compile(
    r'>\s*(?:Organized by|Hosted by|By)\s+([^<\n]+)<', re.IGNORECASE
)
WHITESPACE_RE = re.compile(r'\s+')

START_TIME_META_NAMES = ('event:start_time', 'event:date', 'startDate')

# Headings are matched as whole lines of PageDocument.text().
ABOUT_HEADING_RE = re.compile(r'^[ \t]*about this event[ \t]*$', re.IGNORECASE | re.MULTILINE)
SECTION_HEADING_RE = re.compile(
    r'^[ \t]*(?:tags|location|refund policy|organized by)[ \t]*$', re.IGNORECASE | re.MULTILINE
)


class PageDocument:
    """Fetched page markup, parsed once and shared by every strategy."""

    def __init__(self, markup: str, url: Optional[str] = None):
        self.markup = markup or ''
        self.url = url
        self.soup = BeautifulSoup(self.markup, 'html.parser')
        self._structured_nodes = None
        self._text = None

    @property
    def structured_nodes(self) -> List[Dict[str, Any]]:
        """All JSON-LD objects on the page, flattened out of arrays and @graph."""
        if self._structured_nodes is None:
            self._structured_nodes = list(self._iter_structured_nodes())
        return self._structured_nodes

    @property
    def event_nodes(self) -> List[Dict[str, Any]]:
        return [node for node in self.structured_nodes if is_event_node(node)]

    def meta_content(self, name: str) -> str:
        """Content of a meta tag matched by property, name or itemprop."""
        for attr in ('property', 'name', 'itemprop'):
            tag = self.soup.find('meta', attrs={attr: name})
            if tag and tag.get('content'):
                return tag['content'].strip()
        return ''

    def text(self) -> str:
        """Visible text with script and style contents removed."""
        if self._text is None:
            soup = BeautifulSoup(self.markup, 'html.parser')
            for tag in soup(['script', 'style']):
                tag.decompose()
            self._text = soup.get_text('\n')
        return self._text

    def _iter_structured_nodes(self) -> Iterator[Dict[str, Any]]:
        for script in self.soup.find_all('script', type='application/ld+json'):
            try:
                data = json.loads(script.string or '')
            except (json.JSONDecodeError, TypeError):
                logger.debug("Skipping malformed JSON-LD block")
                continue

            if isinstance(data, list):
                nodes = data
            elif isinstance(data, dict) and isinstance(data.get('@graph'), list):
                nodes = data['@graph']
            else:
                nodes = [data]

            for node in nodes:
                if isinstance(node, dict):
                    yield node


def is_event_node(node: Dict[str, Any]) -> bool:
    """True when any declared @type is Event or a schema.org *Event subtype."""
    declared = node.get('@type')
    types = declared if isinstance(declared, list) else [declared]
    return any(isinstance(t, str) and t.lower().endswith('event') for t in types)


def clean_text(value: Optional[str]) -> str:
    """Unescape HTML entities, turn non-breaking spaces into spaces, strip."""
    if not value:
        return ''
    return html.unescape(value).replace('\xa0', ' ').strip()


def collapse_whitespace(value: str) -> str:
    return WHITESPACE_RE.sub(' ', value).strip()


def parse_start_timestamp(value: Any, strategy: str) -> Optional[DateTimeCandidate]:
    """
    Keep the literal local date/time from a start timestamp string.

    "2025-03-01T19:30:00-04:00" gives 2025-03-01 / 19:30 regardless of the
    offset. A bare date gives an unspecified time.
    """
    if not isinstance(value, str):
        return None
    match = START_TIMESTAMP_RE.match(value.strip())
    if not match:
        return None

    day, hour, minute = match.groups()
    if not _valid_date(day):
        return None
    if hour is None:
        return DateTimeCandidate(date=day, time=UNSPECIFIED_TIME, strategy=strategy)
    if int(hour) > 23 or int(minute) > 59:
        return None
    return DateTimeCandidate(date=day, time=f"{hour}:{minute}", strategy=strategy)


def to_24_hour(hour: str, minute: str, meridiem: str) -> Optional[str]:
    h, m = int(hour), int(minute)
    if not 1 <= h <= 12 or m > 59:
        return None
    meridiem = meridiem.upper()
    if meridiem == 'PM' and h != 12:
        h += 12
    if meridiem == 'AM' and h == 12:
        h = 0
    return f"{h:02d}:{m:02d}"


def _valid_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def first_candidate(strategies: Sequence[Callable], raw) -> Optional[ExtractionCandidate]:
    """Run strategies in order; the first candidate wins."""
    for strategy in strategies:
        candidate = strategy(raw)
        if candidate is not None:
            return candidate
    return None


def merge_datetime_candidates(
    candidates: Iterable[Optional[DateTimeCandidate]]
) -> Optional[DateTimeCandidate]:
    """
    Resolve a date/time from candidates listed in priority order.

    The first candidate carrying a date fixes the date. If its time is
    unspecified, later candidates may still supply the time. Candidates are
    consumed lazily, so expensive strategies further down are not run once
    both parts are known.
    """
    winner = None
    fallback_time = None

    for candidate in candidates:
        if candidate is None:
            continue
        if winner is None:
            if candidate.date:
                winner = candidate
                if winner.time is UNSPECIFIED_TIME and fallback_time:
                    winner = DateTimeCandidate(winner.date, fallback_time, winner.strategy)
            elif candidate.time and not fallback_time:
                fallback_time = candidate.time
        elif winner.time is UNSPECIFIED_TIME and candidate.time:
            winner = DateTimeCandidate(
                winner.date, candidate.time, f"{winner.strategy}+{candidate.strategy}"
            )

        if winner is not None and winner.time is not UNSPECIFIED_TIME:
            break

    return winner


# -- date/time strategies -----------------------------------------------------

def datetime_from_structured_data(page: PageDocument) -> Optional[DateTimeCandidate]:
    for node in page.event_nodes:
        start = node.get('startDate') or node.get('start_date') or node.get('start_time')
        candidate = parse_start_timestamp(start, 'structured_data')
        if candidate:
            return candidate
    return None


def datetime_from_meta_tags(page: PageDocument) -> Optional[DateTimeCandidate]:
    for name in START_TIME_META_NAMES:
        candidate = parse_start_timestamp(page.meta_content(name), 'meta_tag')
        if candidate:
            return candidate
    return None


def time_from_text_scan(page: PageDocument) -> Optional[DateTimeCandidate]:
    """Time-of-day only; the date has to come from a higher-priority source."""
    for match in CLOCK_TIME_RE.finditer(page.text()):
        parsed = to_24_hour(*match.groups())
        if parsed:
            return DateTimeCandidate(date=None, time=parsed, strategy='text_scan')
    return None


def datetime_from_iso_text(page: PageDocument) -> Optional[DateTimeCandidate]:
    for match in ISO_TIMESTAMP_RE.finditer(page.markup):
        candidate = parse_start_timestamp(match.group(0), 'iso_text')
        if candidate:
            return candidate
    return None


def datetime_from_csv_timestamp(value: Optional[str]) -> Optional[DateTimeCandidate]:
    """
    Strict "YYYY-MM-DD HH:MM:SS" bulk-row timestamp.

    A 00:00 time is the spreadsheet's placeholder for "no time given".
    """
    if not value:
        return None
    match = CSV_TIMESTAMP_RE.match(value.strip())
    if not match:
        return None

    day, hour, minute = match.groups()
    if not _valid_date(day) or int(hour) > 23 or int(minute) > 59:
        return None
    if hour == '00' and minute == '00':
        return DateTimeCandidate(date=day, time=UNSPECIFIED_TIME, strategy='csv')
    return DateTimeCandidate(date=day, time=f"{hour}:{minute}", strategy='csv')


PAGE_DATETIME_STRATEGIES = (
    datetime_from_structured_data,
    datetime_from_meta_tags,
    time_from_text_scan,
    datetime_from_iso_text,
)


def page_datetime_candidates(page: PageDocument) -> Iterator[Optional[DateTimeCandidate]]:
    for strategy in PAGE_DATETIME_STRATEGIES:
        yield strategy(page)


def extract_datetime(page: PageDocument) -> Optional[DateTimeCandidate]:
    return merge_datetime_candidates(page_datetime_candidates(page))


# -- image strategies ---------------------------------------------------------

def structured_image_url(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('url') or value.get('contentUrl')
    return value.strip() if isinstance(value, str) else ''


def image_from_structured_data(page: PageDocument) -> Optional[ExtractionCandidate]:
    nodes = page.event_nodes + [n for n in page.structured_nodes if not is_event_node(n)]
    for node in nodes:
        image = structured_image_url(node.get('image'))
        if image:
            return ExtractionCandidate(value=image, strategy='structured_data')
    return None


def image_from_open_graph(page: PageDocument) -> Optional[ExtractionCandidate]:
    image = page.meta_content('og:image')
    if image:
        return ExtractionCandidate(value=image, strategy='open_graph')
    return None


def image_from_background_css(page: PageDocument) -> Optional[ExtractionCandidate]:
    match = BACKGROUND_IMAGE_RE.search(page.markup)
    if not match:
        return None
    image = match.group(1).strip().strip('\'"')
    if not image:
        return None
    return ExtractionCandidate(value=image, strategy='background_css')


IMAGE_STRATEGIES = (
    image_from_structured_data,
    image_from_open_graph,
    image_from_background_css,
)


def extract_image(page: PageDocument) -> Optional[ExtractionCandidate]:
    return first_candidate(IMAGE_STRATEGIES, page)


# -- description --------------------------------------------------------------

def combine_descriptions(short: Optional[str], long: Optional[str]) -> str:
    """Join the non-empty parts of a short and long description with a blank line."""
    parts = [clean_text(short), clean_text(long)]
    return '\n\n'.join(part for part in parts if part)


def description_from_about_section(page: PageDocument) -> Optional[ExtractionCandidate]:
    """Text between the "About this event" heading and the next section heading."""
    text = page.text()
    heading = ABOUT_HEADING_RE.search(text)
    if not heading:
        return None

    section = SECTION_HEADING_RE.search(text, heading.end())
    end = section.start() if section else len(text)

    about = collapse_whitespace(clean_text(text[heading.end():end]))
    if not about:
        return None
    return ExtractionCandidate(value=about, strategy='about_section')


# -- organizer ----------------------------------------------------------------

def _organizer_name(value: Any) -> str:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('name')
    return clean_text(value) if isinstance(value, str) else ''


def organizer_from_structured_data(page: PageDocument) -> Optional[ExtractionCandidate]:
    for node in page.event_nodes:
        name = _organizer_name(node.get('organizer')) or _organizer_name(node.get('performer'))
        if name:
            return ExtractionCandidate(value=name, strategy='structured_data')
    return None


def organizer_from_byline(page: PageDocument) -> Optional[ExtractionCandidate]:
    for pattern in (ORGANIZER_LINK_RE, ORGANIZER_TEXT_RE):
        match = pattern.search(page.markup)
        if match:
            name = collapse_whitespace(clean_text(match.group(1)))
            if name:
                return ExtractionCandidate(value=name, strategy='byline')
    return None


ORGANIZER_STRATEGIES = (
    organizer_from_structured_data,
    organizer_from_byline,
)


def extract_organizer(page: PageDocument) -> Optional[ExtractionCandidate]:
    return first_candidate(ORGANIZER_STRATEGIES, page)
