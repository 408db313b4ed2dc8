"""Integration tests for Lambda handler."""
import base64
import json
import logging
import os
from unittest.mock import Mock, patch

import pytest

import lambda_function
from lambda_function import Settings, lambda_handler, setup_logging
from processor.models import EventDraft, EventRecord
from scraper.event_page import PageImportError
from scraper.remote_image import FetchedImage, ImageFetchError
from storage.event_store import EventStore
from storage.relational_mirror import RelationalMirror


@pytest.fixture
def mock_env(monkeypatch):
    """Set up environment variables for testing."""
    for name in ('DATABASE_URL', 'SNAPSHOT_BUCKET', 'IMAGE_BUCKET', 'IMAGE_BASE_URL', 'SEED_PATH'):
        monkeypatch.delenv(name, raising=False)
    env_vars = {
        'LOG_LEVEL': 'INFO',
        'TIMEOUT_SECONDS': '5',
        'DEFAULT_ORGANIZER': 'Convention Center',
    }
    with patch.dict(os.environ, env_vars):
        yield env_vars


@pytest.fixture
def mock_context():
    """Create a mock Lambda context."""
    context = Mock()
    context.function_name = 'test-function'
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = 'arn:aws:lambda:us-east-1:123456789012:function:test-function'
    context.aws_request_id = 'test-request-id'
    return context


@pytest.fixture
def store(mock_env):
    """Process-wide store without mirrors, reset after each test."""
    store = EventStore(seed_path=None, wait_for_mirrors=True)
    lambda_function._store = store
    yield store
    lambda_function._store = None
    store.close()


def invoke(action, body=None, context=None, **extra):
    event = {'action': action, **extra}
    if body is not None:
        event['body'] = json.dumps(body)
    response = lambda_handler(event, context)
    return response['statusCode'], json.loads(response['body'])


class TestEventActions:
    """Test cases for the event CRUD actions."""

    def test_create_and_list(self, store, mock_context):
        """Test creating an event and listing it back."""
        status, body = invoke('create_event', {
            'event': {'name': 'Expo', 'date': '2025-03-14', 'time': '10:00', 'ticketsUrl': 'https://x.test'}
        }, mock_context)

        assert status == 201
        assert body['event']['name'] == 'Expo'
        assert body['event']['ticketsUrl'] == 'https://x.test'

        status, body = invoke('list_events', context=mock_context)

        assert status == 200
        assert [e['name'] for e in body['events']] == ['Expo']

    def test_create_invalid_event(self, store, mock_context):
        """Test that validation errors are returned per field."""
        status, body = invoke('create_event', {'name': '', 'date': 'soon'}, mock_context)

        assert status == 400
        assert set(body['errors']) == {'name', 'date'}
        assert store.list() == []

    def test_get_event(self, store, mock_context):
        """Test reading one event by path parameter."""
        record = store.create(EventDraft(name='Expo', date='2025-03-14'))

        status, body = invoke('get_event', context=mock_context, pathParameters={'id': record.id})

        assert status == 200
        assert body['event']['id'] == record.id
        assert body['event']['time'] is None
        assert body['displayTime'] == ''

    def test_get_event_display_time(self, store, mock_context):
        """Test the 12-hour display time next to the stored 24-hour time."""
        record = store.create(EventDraft(name='Gala', date='2025-03-14', time='19:05'))

        _, body = invoke('get_event', {'id': record.id}, mock_context)

        assert body['event']['time'] == '19:05'
        assert body['displayTime'] == '7:05 PM'

    def test_get_event_not_found(self, store, mock_context):
        """Test that an unknown id is a 404."""
        status, body = invoke('get_event', context=mock_context, pathParameters={'id': 'missing'})

        assert status == 404

    def test_get_event_requires_id(self, store, mock_context):
        """Test that a missing id is a bad request."""
        status, body = invoke('get_event', context=mock_context)

        assert status == 400
        assert body['message'] == 'Event id is required'

    def test_update_event(self, store, mock_context):
        """Test a partial update."""
        record = store.create(EventDraft(name='Expo', date='2025-03-14', time='10:00'))

        status, body = invoke('update_event', {'id': record.id, 'event': {'planner': 'Hall B'}}, mock_context)

        assert status == 200
        assert body['event']['organizer'] == 'Hall B'
        assert body['event']['time'] == '10:00'

    def test_update_event_not_found(self, store, mock_context):
        """Test that updating an unknown id is a 404."""
        status, _ = invoke('update_event', {'id': 'missing', 'name': 'X'}, mock_context)

        assert status == 404

    def test_delete_event(self, store, mock_context):
        """Test deleting an existing and a missing event."""
        record = store.create(EventDraft(name='Expo', date='2025-03-14'))

        assert invoke('delete_event', {'id': record.id}, mock_context) == (200, {'deleted': True})
        assert invoke('delete_event', {'id': record.id}, mock_context) == (200, {'deleted': False})

    def test_replace_events(self, store, mock_context):
        """Test a full overwrite, skipping malformed entries."""
        status, body = invoke('replace_events', {'events': [
            {'id': 'b', 'name': 'Second', 'date': '2025-03-02'},
            {'id': 'a', 'name': 'First', 'date': '2025-03-01', 'time': '19:00'},
            {'name': 'No id', 'date': '2025-03-03'},
        ]}, mock_context)

        assert status == 200
        assert body['count'] == 2
        assert [e['id'] for e in body['events']] == ['a', 'b']

    def test_create_event_with_non_string_fields(self, store, mock_context):
        """Test that wrongly typed fields are field errors, not server errors."""
        status, body = invoke('create_event', {
            'event': {'name': 123, 'date': '2025-03-14', 'organizer': ['Hall B']}
        }, mock_context)

        assert status == 400
        assert set(body['errors']) == {'name', 'organizer'}
        assert store.list() == []

    def test_create_event_requires_object(self, store, mock_context):
        """Test that a non-object event payload is a bad request."""
        status, body = invoke('create_event', {'event': 'Expo'}, mock_context)

        assert status == 400
        assert body['message'] == "'event' must be a JSON object"

    def test_replace_events_drops_wrongly_typed_entries(self, store, mock_context):
        """Test that one entry with a numeric name does not fail the overwrite."""
        status, body = invoke('replace_events', {'events': [
            {'id': 'a', 'name': 'First', 'date': '2025-03-01'},
            {'id': 'b', 'name': 5, 'date': '2025-03-02'},
            {'id': 'c', 'name': 'Third', 'date': '2025-03-03', 'ticketsUrl': 42},
        ]}, mock_context)

        assert status == 200
        assert body['count'] == 1
        assert [e['id'] for e in body['events']] == ['a']

    def test_list_upcoming_events(self, store, mock_context):
        """Test that the upcoming filter leaves out past events."""
        store.replace_all([
            EventRecord(id='old', name='Opening Night', date='2000-01-01', time='19:00'),
            EventRecord(id='new', name='Centennial', date='2999-01-01'),
        ])

        _, body = invoke('list_events', context=mock_context)
        assert [e['id'] for e in body['events']] == ['old', 'new']

        status, body = invoke('list_events', {'upcoming': True}, mock_context)
        assert status == 200
        assert [e['id'] for e in body['events']] == ['new']

    def test_replace_events_requires_list(self, store, mock_context):
        """Test that the events payload must be a list."""
        status, _ = invoke('replace_events', {'events': {'id': 'a'}}, mock_context)

        assert status == 400


class TestRequestHandling:
    """Test cases for request parsing and error mapping."""

    def test_unknown_action(self, store, mock_context):
        """Test that an unknown action is a bad request."""
        status, body = invoke('sync_calendar', context=mock_context)

        assert status == 400
        assert 'sync_calendar' in body['message']

    def test_invalid_json_body(self, store, mock_context):
        """Test that a malformed body is a bad request."""
        response = lambda_handler({'action': 'create_event', 'body': '{not json'}, mock_context)

        assert response['statusCode'] == 400

    def test_base64_body(self, store, mock_context):
        """Test that API Gateway base64 bodies are decoded."""
        body = base64.b64encode(json.dumps({'name': 'Expo', 'date': '2025-03-14'}).encode('utf-8'))
        response = lambda_handler(
            {'action': 'create_event', 'body': body.decode('ascii'), 'isBase64Encoded': True},
            mock_context
        )

        assert response['statusCode'] == 201

    def test_unexpected_error_is_500(self, store, mock_context):
        """Test that unexpected failures are reported with their type."""
        with patch.object(store, 'list', side_effect=RuntimeError('cache corrupted')):
            status, body = invoke('list_events', context=mock_context)

        assert status == 500
        assert body['error'] == 'cache corrupted'
        assert body['error_type'] == 'RuntimeError'


class TestImportActions:
    """Test cases for the import and image actions."""

    @patch('lambda_function.PageFetcher')
    def test_import_csv(self, mock_fetcher_class, store, mock_context):
        """Test a bulk import from CSV text."""
        csv_text = (
            "Title,Start Date,External Link,Short Description,Description\n"
            "Expo,2025-03-14 10:00:00,,Short,Long\n"
            ",2025-03-15 10:00:00,,,\n"
            "Gala,2025-03-16 00:00:00,,,\n"
        )

        status, body = invoke('import_csv', {'csv': csv_text}, mock_context)

        assert status == 200
        assert body['count'] == 2
        assert [r['index'] for r in body['results']] == [0, 2]
        assert body['results'][0]['action'] == 'insert'
        assert body['results'][0]['event']['organizer'] == 'Convention Center'
        assert body['results'][1]['event']['time'] is None
        assert len(store.list()) == 2

    @patch('lambda_function.PageFetcher')
    def test_import_csv_dry_run_with_limit(self, mock_fetcher_class, store, mock_context):
        """Test that a dry run previews without persisting."""
        csv_text = (
            "Title,Start Date\n"
            "Expo,2025-03-14 10:00:00\n"
            "Gala,2025-03-16 18:00:00\n"
        )

        status, body = invoke('import_csv', {'csv': csv_text, 'dryRun': True, 'limit': 1}, mock_context)

        assert status == 200
        assert body['count'] == 1
        assert body['results'][0]['action'] == 'preview'
        assert store.list() == []

    @pytest.mark.parametrize("limit", [True, "2", 1.5])
    def test_import_csv_rejects_non_integer_limit(self, store, mock_context, limit):
        """Test that booleans and other non-integers are not accepted as a limit."""
        status, body = invoke('import_csv', {'csv': "Title,Start Date\n", 'limit': limit}, mock_context)

        assert status == 400
        assert body['message'] == "'limit' must be an integer"

    def test_import_csv_missing_file(self, store, mock_context, tmp_path):
        """Test that an unreadable input file aborts the import."""
        status, body = invoke('import_csv', {'filePath': str(tmp_path / 'missing.csv')}, mock_context)

        assert status == 400
        assert body['message'] == 'Import failed'

    def test_import_csv_requires_input(self, store, mock_context):
        """Test that either csv text or a file path is required."""
        status, _ = invoke('import_csv', {}, mock_context)

        assert status == 400

    @patch('lambda_function.EventPageImporter')
    def test_import_event(self, mock_importer_class, store, mock_context):
        """Test importing a single event page as a draft."""
        mock_importer = Mock()
        mock_importer.import_event.return_value = EventDraft(
            name='Jazz Night', date='2025-04-12', time='20:00', tickets_url='https://x.test/e/1'
        )
        mock_importer_class.return_value = mock_importer

        status, body = invoke('import_event', {'url': 'https://x.test/e/1'}, mock_context)

        assert status == 200
        assert body['event']['name'] == 'Jazz Night'
        assert body['event']['ticketsUrl'] == 'https://x.test/e/1'
        mock_importer.import_event.assert_called_once_with('https://x.test/e/1')
        assert store.list() == []

    @patch('lambda_function.EventPageImporter')
    def test_import_event_fetch_failure(self, mock_importer_class, store, mock_context):
        """Test that an unreachable page is a bad request."""
        mock_importer_class.return_value.import_event.side_effect = PageImportError(
            'https://x.test/e/1', 'Fetch failed: 404'
        )

        status, body = invoke('import_event', {'url': 'https://x.test/e/1'}, mock_context)

        assert status == 400
        assert body['url'] == 'https://x.test/e/1'

    def test_import_event_requires_url(self, store, mock_context):
        """Test that a url is required."""
        status, body = invoke('import_event', {}, mock_context)

        assert status == 400
        assert body['message'] == 'url required'

    @patch('lambda_function.RemoteImageFetcher')
    def test_fetch_image(self, mock_fetcher_class, store, mock_context):
        """Test that the image comes back as a data URL."""
        mock_fetcher_class.return_value.fetch.return_value = FetchedImage(
            content=b'pngdata',
            filename='poster.png',
            content_type='image/png',
            size=7,
            source_url='https://x.test/poster.png'
        )

        status, body = invoke('fetch_image', {'url': 'https://x.test/poster.png'}, mock_context)

        assert status == 200
        assert body['dataUrl'] == 'data:image/png;base64,' + base64.b64encode(b'pngdata').decode('ascii')
        assert body['filename'] == 'poster.png'
        assert body['size'] == 7
        assert body['contentType'] == 'image/png'
        assert body['originalUrl'] == 'https://x.test/poster.png'

    @pytest.mark.parametrize('reason,expected_status', [
        (ImageFetchError.TOO_LARGE, 413),
        (ImageFetchError.TIMEOUT, 408),
        (ImageFetchError.NETWORK, 502),
        (ImageFetchError.NOT_IMAGE, 400),
        (ImageFetchError.INVALID_URL, 400),
    ])
    @patch('lambda_function.RemoteImageFetcher')
    def test_fetch_image_rejections(self, mock_fetcher_class, reason, expected_status, store, mock_context):
        """Test the status code for each rejection reason."""
        mock_fetcher_class.return_value.fetch.side_effect = ImageFetchError(reason, 'rejected')

        status, body = invoke('fetch_image', {'url': 'https://x.test/a.jpg'}, mock_context)

        assert status == expected_status
        assert body['reason'] == reason


class TestStoreConfiguration:
    """Test cases for building the process-wide store."""

    def test_settings_from_env(self, mock_env, monkeypatch):
        """Test reading configuration from the environment."""
        monkeypatch.setenv('DATABASE_URL', 'sqlite://')
        monkeypatch.setenv('IMAGE_MAX_BYTES', '1024')

        settings = Settings.from_env()

        assert settings.database_url == 'sqlite://'
        assert settings.timeout_seconds == 5
        assert settings.image_max_bytes == 1024
        assert settings.snapshot_bucket is None

    def test_get_store_uses_relational_mirror(self, mock_env, monkeypatch):
        """Test that DATABASE_URL enables the relational mirror."""
        monkeypatch.setenv('DATABASE_URL', 'sqlite://')
        monkeypatch.setattr(lambda_function, '_store', None)

        store = lambda_function.get_store(Settings.from_env())

        assert isinstance(store.relational, RelationalMirror)
        assert store.snapshot is None
        assert lambda_function.get_store(Settings.from_env()) is store
        assert store.list() == []
        store.close()

    def test_store_survives_between_invocations(self, store, mock_context):
        """Test that warm invocations reuse the cached store."""
        store.replace_all([EventRecord(id='a', name='Expo', date='2025-03-14')])

        status, body = invoke('list_events', context=mock_context)

        assert [e['id'] for e in body['events']] == ['a']


class TestLogging:
    """Test cases for handler logging."""

    @patch('lambda_function.setup_logging')
    def test_logging_output(self, mock_setup_logging, store, mock_context, caplog):
        """Test that logging output is generated correctly."""
        with caplog.at_level(logging.INFO, logger='lambda_function'):
            invoke('list_events', context=mock_context)

        log_messages = [record.message for record in caplog.records]
        assert any('Handling action list_events' in msg for msg in log_messages)
        assert any('completed with status 200' in msg for msg in log_messages)

    def test_json_formatter(self):
        """Test that log records are rendered as JSON."""
        record = logging.LogRecord('test', logging.ERROR, __file__, 1, 'Something failed', None, None)

        data = json.loads(lambda_function.JsonFormatter().format(record))

        assert data['level'] == 'ERROR'
        assert data['message'] == 'Something failed'
        assert data['logger'] == 'test'


class TestSetupLogging:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self):
        """Test logging setup with default INFO level."""
        setup_logging()
        logger = logging.getLogger()
        assert logger.level == logging.INFO

    def test_setup_logging_debug_level(self):
        """Test logging setup with DEBUG level."""
        setup_logging('DEBUG')
        logger = logging.getLogger()
        assert logger.level == logging.DEBUG

    def test_setup_logging_error_level(self):
        """Test logging setup with ERROR level."""
        setup_logging('ERROR')
        logger = logging.getLogger()
        assert logger.level == logging.ERROR
