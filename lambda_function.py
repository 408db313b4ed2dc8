"""AWS Lambda handler for the venue event calendar."""
import base64
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from processor.event_processor import InvalidEventError
from processor.models import EventRecord, format_event_time, is_past_event
from scraper.bulk_import import BulkEventImporter, BulkImportError
from scraper.event_page import EventPageImporter, PageImportError
from scraper.page_fetcher import PageFetcher
from scraper.remote_image import ImageFetchError, RemoteImageFetcher
from storage.blob_snapshot import BlobSnapshot
from storage.event_store import DEFAULT_SEED_PATH, EventStore
from storage.image_uploader import S3ImageUploader
from storage.relational_mirror import RelationalMirror


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


@dataclass
class Settings:
    """Runtime configuration read from environment variables."""
    log_level: str = 'INFO'
    database_url: Optional[str] = None
    snapshot_bucket: Optional[str] = None
    snapshot_key: str = 'events.json'
    image_bucket: Optional[str] = None
    image_base_url: Optional[str] = None
    aws_region: Optional[str] = None
    timeout_seconds: int = 15
    image_timeout_seconds: int = 10
    image_max_bytes: int = 10 * 1024 * 1024
    default_organizer: str = ''
    seed_path: str = str(DEFAULT_SEED_PATH)

    @classmethod
    def from_env(cls) -> 'Settings':
        env = os.environ
        return cls(
            log_level=env.get('LOG_LEVEL', 'INFO'),
            database_url=env.get('DATABASE_URL') or None,
            snapshot_bucket=env.get('SNAPSHOT_BUCKET') or None,
            snapshot_key=env.get('SNAPSHOT_KEY', 'events.json'),
            image_bucket=env.get('IMAGE_BUCKET') or None,
            image_base_url=env.get('IMAGE_BASE_URL') or None,
            aws_region=env.get('AWS_REGION') or None,
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', '15')),
            image_timeout_seconds=int(env.get('IMAGE_TIMEOUT_SECONDS', '10')),
            image_max_bytes=int(env.get('IMAGE_MAX_BYTES', str(10 * 1024 * 1024))),
            default_organizer=env.get('DEFAULT_ORGANIZER', ''),
            seed_path=env.get('SEED_PATH', str(DEFAULT_SEED_PATH)),
        )


class BadRequest(Exception):
    """Raised for a request the handler cannot act on."""


# Built once per container and reused by warm invocations.
_store: Optional[EventStore] = None


def get_store(settings: Settings) -> EventStore:
    """Return the process-wide event store, building it on first use."""
    global _store
    if _store is None:
        logger = logging.getLogger(__name__)
        relational = None
        if settings.database_url:
            try:
                relational = RelationalMirror.from_url(settings.database_url)
            except Exception as e:
                logger.error(f"Relational store disabled: {e}", exc_info=True)

        snapshot = None
        if settings.snapshot_bucket:
            snapshot = BlobSnapshot(
                settings.snapshot_bucket,
                settings.snapshot_key,
                region_name=settings.aws_region
            )

        _store = EventStore(relational=relational, snapshot=snapshot, seed_path=settings.seed_path)
    return _store


def _image_fetcher(settings: Settings) -> RemoteImageFetcher:
    return RemoteImageFetcher(
        timeout=settings.image_timeout_seconds,
        max_bytes=settings.image_max_bytes
    )


def _event_id(event: Dict[str, Any], payload: Dict[str, Any]) -> str:
    event_id = (event.get('pathParameters') or {}).get('id') or payload.get('id')
    if not event_id:
        raise BadRequest('Event id is required')
    return str(event_id)


def _event_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Event fields from {'event': {...}} or from the body itself."""
    fields = payload.get('event', payload)
    if not isinstance(fields, dict):
        raise BadRequest("'event' must be a JSON object")
    return fields


def _parse_body(event: Dict[str, Any]) -> Dict[str, Any]:
    body = event.get('body')
    if body is None:
        return {}
    if isinstance(body, (str, bytes)):
        if event.get('isBase64Encoded'):
            body = base64.b64decode(body)
        if not body.strip():
            return {}
        try:
            body = json.loads(body)
        except ValueError as e:
            raise BadRequest(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise BadRequest('Request body must be a JSON object')
    return body


# -- actions --------------------------------------------------------------------

def list_events(event, payload, settings) -> Tuple[int, Dict[str, Any]]:
    events = get_store(settings).list()
    if payload.get('upcoming'):
        events = [e for e in events if not is_past_event(e)]
    return 200, {'events': [e.to_dict() for e in events]}


def get_event(event, payload, settings):
    record = get_store(settings).get(_event_id(event, payload))
    if record is None:
        return 404, {'message': 'Event not found'}
    return 200, {'event': record.to_dict(), 'displayTime': format_event_time(record)}


def create_event(event, payload, settings):
    data = _event_fields(payload)
    record = get_store(settings).create(data)
    return 201, {'event': record.to_dict()}


def update_event(event, payload, settings):
    event_id = _event_id(event, payload)
    patch = _event_fields(payload)
    record = get_store(settings).update(event_id, patch)
    if record is None:
        return 404, {'message': 'Event not found'}
    return 200, {'event': record.to_dict()}


def delete_event(event, payload, settings):
    deleted = get_store(settings).delete(_event_id(event, payload))
    return 200, {'deleted': deleted}


def replace_events(event, payload, settings):
    items = payload.get('events')
    if not isinstance(items, list):
        raise BadRequest("'events' must be a list")

    logger = logging.getLogger(__name__)
    records = []
    for item in items:
        try:
            records.append(EventRecord.from_dict(item))
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping malformed event in replace request: {e}")
    stored = get_store(settings).replace_all(records)
    return 200, {'count': len(stored), 'events': [e.to_dict() for e in stored]}


def import_csv(event, payload, settings):
    dry_run = bool(payload.get('dryRun', False))
    limit = payload.get('limit')
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
        raise BadRequest("'limit' must be an integer")

    image_copier = None
    if settings.image_bucket and not dry_run:
        uploader = S3ImageUploader(
            settings.image_bucket,
            base_url=settings.image_base_url,
            region_name=settings.aws_region,
            fetcher=_image_fetcher(settings)
        )
        image_copier = uploader.copy_from_url

    importer = BulkEventImporter(
        store=None if dry_run else get_store(settings),
        fetcher=PageFetcher(timeout=settings.timeout_seconds),
        image_copier=image_copier,
        default_organizer=settings.default_organizer
    )

    if isinstance(payload.get('csv'), str):
        result = importer.import_csv(payload['csv'], dry_run=dry_run, limit=limit)
    elif payload.get('filePath'):
        result = importer.import_file(payload['filePath'], dry_run=dry_run, limit=limit)
    else:
        raise BadRequest("Either 'csv' or 'filePath' is required")
    return 200, result.to_dict()


def import_event(event, payload, settings):
    url = payload.get('url')
    if not url or not isinstance(url, str):
        raise BadRequest('url required')
    importer = EventPageImporter(PageFetcher(timeout=settings.timeout_seconds))
    draft = importer.import_event(url)
    return 200, {'event': draft.to_dict()}


def fetch_image(event, payload, settings):
    url = payload.get('url')
    if not url or not isinstance(url, str):
        raise BadRequest('Image URL is required')
    image = _image_fetcher(settings).fetch(url)
    encoded = base64.b64encode(image.content).decode('ascii')
    return 200, {
        'dataUrl': f"data:{image.content_type};base64,{encoded}",
        'filename': image.filename,
        'size': image.size,
        'contentType': image.content_type,
        'originalUrl': image.source_url,
    }


ACTIONS = {
    'list_events': list_events,
    'get_event': get_event,
    'create_event': create_event,
    'update_event': update_event,
    'delete_event': delete_event,
    'replace_events': replace_events,
    'import_csv': import_csv,
    'import_event': import_event,
    'fetch_image': fetch_image,
}

IMAGE_ERROR_STATUS = {
    ImageFetchError.TOO_LARGE: 413,
    ImageFetchError.TIMEOUT: 408,
    ImageFetchError.NETWORK: 502,
}


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the event calendar.

    Args:
        event: Request payload with an 'action' and an optional JSON 'body'
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()
    event = event or {}
    action = event.get('action')
    logger.info(f"Handling action {action}")

    handler = ACTIONS.get(action)
    if handler is None:
        return _response(400, {'message': f"Unknown action '{action}'"})

    try:
        payload = _parse_body(event)
        status_code, body = handler(event, payload, settings)

    except BadRequest as e:
        status_code, body = 400, {'message': str(e)}
    except InvalidEventError as e:
        status_code, body = 400, {'message': 'Invalid event', 'errors': e.errors}
    except BulkImportError as e:
        logger.error(f"Bulk import aborted: {e}")
        status_code, body = 400, {'message': 'Import failed', 'error': str(e)}
    except PageImportError as e:
        logger.warning(f"Event import failed for {e.url}: {e}")
        status_code, body = 400, {'message': str(e), 'url': e.url}
    except ImageFetchError as e:
        logger.warning(f"Image rejected ({e.reason}): {e}")
        status_code = IMAGE_ERROR_STATUS.get(e.reason, 400)
        body = {'message': str(e), 'reason': e.reason}
    except Exception as e:
        logger.error(
            f"Action {action} failed: {str(e)}",
            extra={'error_type': type(e).__name__},
            exc_info=True
        )
        status_code, body = 500, {
            'message': 'Request failed',
            'error': str(e),
            'error_type': type(e).__name__
        }

    # The container may be frozen after returning; let queued mirror writes land.
    if _store is not None:
        _store.flush()

    duration = time.time() - start_time
    logger.info(
        f"Action {action} completed with status {status_code}",
        extra={'duration_seconds': round(duration, 2)}
    )
    return _response(status_code, body)
