import pytest
import json
import logging
import tempfile
import os
from unittest.mock import Mock

from festival_sync.crosscutting.logging import (
    SecretMasker, StructuredFormatter, CorrelationContext,
    setup_logging, get_logger, log_with_fields,
    log_page_fetched, log_rate_limited, log_fetch_complete,
    log_candidates_extracted, log_comparison_complete, log_error,
    request_id_var, step_var, playlist_id_var
)


def make_record(message="Test message", fields=None, exc_info=None):
    record = logging.LogRecord(
        name='festival_sync.test', level=logging.INFO, pathname='test.py',
        lineno=10, msg=message, args=(), exc_info=exc_info, func='test_function'
    )
    if fields is not None:
        record.fields = fields
    return record


class TestSecretMasker:
    """Tests for secret masking functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.masker = SecretMasker()

    def test_mask_api_token(self):
        """Test masking API tokens."""
        text = "API token: abc123def456ghi789"
        masked = self.masker.mask_secrets(text)
        assert masked == "API token: abc1**********i789"
        assert "abc123def456ghi789" not in masked

    def test_mask_access_token(self):
        """Test masking Spotify access tokens."""
        token = "BQABC123DEF456GHI789JKL012MNO345"
        masked = self.masker.mask_secrets(f"access_token={token}")
        assert token not in masked
        assert masked.endswith("O345")

    def test_mask_client_secret(self):
        """Test masking client secrets."""
        text = "client_secret: my_super_secret_key_12345"
        masked = self.masker.mask_secrets(text)
        assert masked == "client_secret: my_s*****************2345"

    def test_mask_oauth_code(self):
        """Test masking OAuth authorization codes."""
        code = "AQDxyz1234567890abcdefghij"
        masked = self.masker.mask_secrets(f"code={code}")
        assert code not in masked

    def test_plain_text_unchanged(self):
        text = "Found 12 playlists for user"
        assert self.masker.mask_secrets(text) == text

    def test_empty(self):
        assert self.masker.mask_secrets("") == ""

    def test_mask_dict(self):
        """Test masking nested dictionaries and lists."""
        data = {
            'note': 'token: abcdefghijklmnop',
            'nested': {'auth': 'secret=1234567890abcdef'},
            'items': ['password: hunter2hunter2', 3],
            'count': 5,
        }
        masked = self.masker.mask_dict(data)

        assert 'abcdefghijklmnop' not in masked['note']
        assert '1234567890abcdef' not in masked['nested']['auth']
        assert 'hunter2hunter2' not in masked['items'][0]
        assert masked['items'][1] == 3
        assert masked['count'] == 5


class TestStructuredFormatter:
    """Tests for the JSON formatter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.formatter = StructuredFormatter()

    def test_format_basic_record(self):
        """Test basic JSON formatting."""
        entry = json.loads(self.formatter.format(make_record()))

        assert entry['level'] == 'INFO'
        assert entry['logger'] == 'festival_sync.test'
        assert entry['message'] == 'Test message'
        assert entry['function'] == 'test_function'
        assert entry['line'] == 10
        assert entry['ts'].endswith('Z')
        assert 'requestId' not in entry

    def test_format_with_correlation(self):
        """Test correlation fields are emitted."""
        with CorrelationContext(request_id='req-1', step='compare', playlist_id='pl-9'):
            entry = json.loads(self.formatter.format(make_record()))

        assert entry['requestId'] == 'req-1'
        assert entry['step'] == 'compare'
        assert entry['playlistId'] == 'pl-9'

    def test_format_masks_message_and_fields(self):
        record = make_record("refresh_token=ABCDEFGHIJKLMNOPQRSTUVWX",
                             fields={'detail': 'client_secret: 0123456789abcdefghijXYZ'})
        output = self.formatter.format(record)

        assert 'ABCDEFGHIJKLMNOPQRSTUVWX' not in output
        assert '0123456789abcdefghijXYZ' not in output

    def test_format_with_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            import sys
            record = make_record(exc_info=sys.exc_info())

        entry = json.loads(self.formatter.format(record))
        assert 'ValueError: broken' in entry['exception']


class TestCorrelationContext:
    """Tests for correlation context management."""

    def test_sets_and_restores(self):
        assert request_id_var.get() is None
        with CorrelationContext(request_id='outer', step='upload'):
            assert request_id_var.get() == 'outer'
            with CorrelationContext(playlist_id='p1'):
                assert playlist_id_var.get() == 'p1'
                assert step_var.get() == 'upload'
            assert playlist_id_var.get() is None
        assert request_id_var.get() is None
        assert step_var.get() is None

    def test_restores_on_exception(self):
        with pytest.raises(RuntimeError):
            with CorrelationContext(step='create'):
                raise RuntimeError("fail")
        assert step_var.get() is None


class TestLoggingHelpers:
    """Tests for logger setup and structured helpers."""

    def setup_method(self):
        """Set up test fixtures."""
        self.logger = Mock()

    def fields_of(self, call):
        return call.kwargs['extra']['fields']

    def test_setup_logging_with_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = os.path.join(temp_dir, 'festival.log')
            logger = setup_logging('DEBUG', log_file=log_file)
            try:
                logger.info("written to file")
                for handler in logger.handlers:
                    handler.flush()
                with open(log_file) as f:
                    entry = json.loads(f.readline())
                assert entry['message'] == 'written to file'
                assert logger.level == logging.DEBUG
                assert len(logger.handlers) == 2
            finally:
                for handler in list(logger.handlers):
                    handler.close()
                logger.handlers.clear()

    def test_get_logger(self):
        assert get_logger().name == 'festival_sync'
        assert get_logger('festival_sync.http').name == 'festival_sync.http'

    def test_log_with_fields_merges_kwargs(self):
        log_with_fields(self.logger, 'WARNING', 'msg', {'a': 1}, b=2)

        call = self.logger.log.call_args
        assert call.args == (logging.WARNING, 'msg')
        assert self.fields_of(call) == {'a': 1, 'b': 2}

    def test_log_page_fetched(self):
        log_page_fetched(self.logger, page=2, offset=50, received=50, total=120)
        assert self.fields_of(self.logger.log.call_args) == {
            'page': 2, 'offset': 50, 'received': 50, 'total': 120
        }

    def test_log_rate_limited(self):
        log_rate_limited(self.logger, page=1, attempt=1, max_retries=3, wait_seconds=2, offset=0)
        call = self.logger.log.call_args
        assert call.args[0] == logging.WARNING
        assert self.fields_of(call)['wait_seconds'] == 2
        assert self.fields_of(call)['retry_after'] is None

    def test_log_fetch_complete(self):
        log_fetch_complete(self.logger, pages=3, items=120, total=120)
        assert self.fields_of(self.logger.log.call_args)['items'] == 120

    def test_log_candidates_extracted_sets_step(self):
        seen = {}
        self.logger.log.side_effect = lambda *a, **k: seen.setdefault('step', step_var.get())

        log_candidates_extracted(self.logger, line_count=10, candidate_count=4)

        assert seen['step'] == 'review'
        assert self.fields_of(self.logger.log.call_args) == {'line_count': 10, 'candidate_count': 4}

    def test_log_comparison_complete_sets_step(self):
        seen = {}
        self.logger.log.side_effect = lambda *a, **k: seen.setdefault('step', step_var.get())

        log_comparison_complete(self.logger, festival_artists=5, playlists=2,
                                playlist_artists=40, matched=3)

        assert seen['step'] == 'compare'
        assert self.fields_of(self.logger.log.call_args)['matched'] == 3

    def test_log_error(self):
        log_error(self.logger, 'Failed', ValueError("bad"), route='/api/ocr')

        call = self.logger.log.call_args
        assert call.args[0] == logging.ERROR
        assert call.kwargs['exc_info'] is True
        assert self.fields_of(call) == {
            'error_type': 'ValueError', 'error_message': 'bad', 'route': '/api/ocr'
        }
