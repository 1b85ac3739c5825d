import json
import logging
import re
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from contextvars import ContextVar

# Context variables for correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
step_var: ContextVar[Optional[str]] = ContextVar('step', default=None)
playlist_id_var: ContextVar[Optional[str]] = ContextVar('playlist_id', default=None)


class SecretMasker:
    """Masks sensitive information in log messages."""

    def __init__(self):
        """Initialize secret masker with patterns."""
        self.patterns = [
            # API tokens and keys
            r'(?i)(token|key|secret|password|auth)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{10,})["\']?',
            # Spotify access/refresh tokens
            r'(?i)(access_token|refresh_token)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Client secrets
            r'(?i)(client_secret)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
            # Google service account private keys
            r'(?i)(private_key)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.\+/=]{20,})["\']?',
            # OAuth codes
            r'(?i)(code|authorization_code)[\s]*[:=][\s]*["\']?([a-zA-Z0-9\-_\.]{20,})["\']?',
        ]

        self.compiled_patterns = [re.compile(pattern) for pattern in self.patterns]

    def mask_secrets(self, text: str) -> str:
        """Mask sensitive information in text."""
        if not text:
            return text

        masked_text = text

        def replace_match(match):
            prefix = match.group(1)
            secret = match.group(2)
            # Keep first 4 and last 4 characters
            if len(secret) > 8:
                masked_secret = secret[:4] + '*' * (len(secret) - 8) + secret[-4:]
            else:
                masked_secret = '*' * len(secret)
            return f"{prefix}: {masked_secret}"

        for pattern in self.compiled_patterns:
            masked_text = pattern.sub(replace_match, masked_text)

        return masked_text

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Mask sensitive information in dictionary values."""
        if not data:
            return data

        masked_data = {}

        for key, value in data.items():
            if isinstance(value, str):
                masked_data[key] = self.mask_secrets(value)
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [self.mask_dict(item) if isinstance(item, dict)
                                    else self.mask_secrets(item) if isinstance(item, str)
                                    else item for item in value]
            else:
                masked_data[key] = value

        return masked_data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self):
        super().__init__()
        self.masker = SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        request_id = request_id_var.get()
        step = step_var.get()
        playlist_id = playlist_id_var.get()

        log_entry = {
            'ts': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': self.masker.mask_secrets(record.getMessage()),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if request_id:
            log_entry['requestId'] = request_id
        if step:
            log_entry['step'] = step
        if playlist_id:
            log_entry['playlistId'] = playlist_id

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if getattr(record, 'fields', None):
            log_entry['fields'] = self.masker.mask_dict(record.fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CorrelationContext:
    """Context manager for correlation data."""

    def __init__(self, request_id: Optional[str] = None,
                 step: Optional[str] = None,
                 playlist_id: Optional[str] = None):
        self.request_id = request_id
        self.step = step
        self.playlist_id = playlist_id
        self._tokens = []

    def __enter__(self):
        """Set correlation context."""
        if self.request_id is not None:
            self._tokens.append((request_id_var, request_id_var.set(self.request_id)))
        if self.step is not None:
            self._tokens.append((step_var, step_var.set(self.step)))
        if self.playlist_id is not None:
            self._tokens.append((playlist_id_var, playlist_id_var.set(self.playlist_id)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Restore correlation context."""
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def setup_logging(level: str = 'INFO',
                  log_file: Optional[str] = None,
                  request_id: Optional[str] = None) -> logging.Logger:
    """Setup structured logging for the festival_sync logger tree."""
    logger = logging.getLogger('festival_sync')
    logger.setLevel(getattr(logging, level.upper()))

    logger.handlers.clear()

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if request_id:
        request_id_var.set(request_id)

    return logger


def get_logger(name: str = 'festival_sync') -> logging.Logger:
    """Get logger with structured formatting."""
    return logging.getLogger(name)


def log_with_fields(logger: logging.Logger, level: str, message: str,
                    fields: Optional[Dict[str, Any]] = None,
                    exc_info: bool = False, **kwargs):
    """Log message with additional structured fields."""
    merged = dict(fields or {})
    merged.update(kwargs)
    logger.log(getattr(logging, level.upper()), message,
               extra={'fields': merged}, exc_info=exc_info)


def log_page_fetched(logger: logging.Logger, page: int, offset: int,
                     received: int, total: Optional[int], **kwargs):
    """Log one successfully fetched page."""
    log_with_fields(logger, 'DEBUG', 'Page fetched', {
        'page': page,
        'offset': offset,
        'received': received,
        'total': total,
        **kwargs
    })


def log_rate_limited(logger: logging.Logger, page: int, attempt: int,
                     max_retries: int, wait_seconds: float,
                     retry_after: Optional[Any] = None, **kwargs):
    """Log a rate-limit backoff before retrying a page."""
    log_with_fields(logger, 'WARNING', 'Rate limited, backing off', {
        'page': page,
        'attempt': attempt,
        'max_retries': max_retries,
        'wait_seconds': wait_seconds,
        'retry_after': retry_after,
        **kwargs
    })


def log_fetch_complete(logger: logging.Logger, pages: int, items: int,
                       total: Optional[int], **kwargs):
    """Log pagination completion."""
    log_with_fields(logger, 'INFO', 'Pagination finished', {
        'pages': pages,
        'items': items,
        'total': total,
        **kwargs
    })


def log_candidates_extracted(logger: logging.Logger, line_count: int,
                             candidate_count: int, **kwargs):
    """Log the outcome of candidate extraction for one OCR result."""
    with CorrelationContext(step='review'):
        log_with_fields(logger, 'INFO', 'Candidates extracted', {
            'line_count': line_count,
            'candidate_count': candidate_count,
            **kwargs
        })


def log_comparison_complete(logger: logging.Logger, festival_artists: int,
                            playlists: int, playlist_artists: int,
                            matched: int, **kwargs):
    """Log completion of a festival/playlist comparison."""
    with CorrelationContext(step='compare'):
        log_with_fields(logger, 'INFO', 'Comparison complete', {
            'festival_artists': festival_artists,
            'playlists': playlists,
            'playlist_artists': playlist_artists,
            'matched': matched,
            **kwargs
        })


def log_error(logger: logging.Logger, message: str, error: Exception, **kwargs):
    """Log error with exception details."""
    log_with_fields(logger, 'ERROR', message, {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **kwargs
    }, exc_info=True)
