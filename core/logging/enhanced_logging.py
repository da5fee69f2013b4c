# Enhanced structured logging with multi-channel support
import sys
import logging
import logging.handlers
from typing import Dict, Optional
import structlog

from core.config.settings import Settings
from .channels import (
    LogChannel,
    get_channel_for_component,
    get_channel_config,
    create_log_directory_structure,
)

# Global logger manager instance
_logger_manager: Optional['EnhancedLoggerManager'] = None

# Global flag to prevent duplicate configuration
_enhanced_logging_configured = False

DEFAULT_REDACT_KEYS = [
    'authorization', 'access_token', 'refresh_token', 'api_key', 'api-secret', 'api_secret',
    'password', 'secret', 'token', 'set-cookie'
]


class ChannelFilter(logging.Filter):
    """Filter that routes records to a handler only if they match a channel.

    If the record has a structured `channel` attribute, it must match `expected_channel`.
    If not present, allow selected third-party logger name prefixes (e.g., uvicorn/fastapi) when provided.
    """

    def __init__(self, expected_channel: str, allowed_logger_prefixes: Optional[list[str]] = None):
        super().__init__()
        self.expected_channel = expected_channel
        self.allowed_logger_prefixes = allowed_logger_prefixes or []

    def filter(self, record: logging.LogRecord) -> bool:
        event = record.msg if isinstance(record.msg, dict) else {}
        ch = event.get("channel", getattr(record, "channel", None))
        if ch is not None:
            return str(ch) == self.expected_channel
        name = getattr(record, "name", "")
        for prefix in self.allowed_logger_prefixes:
            if name.startswith(prefix):
                return True
        return False


def _attach(handler: logging.Handler, *logger_names: str) -> None:
    for logger_name in logger_names:
        stdlib_logger = logging.getLogger(logger_name)
        if handler not in stdlib_logger.handlers:
            stdlib_logger.addHandler(handler)


def _foreign_pre_chain() -> list:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


class EnhancedLoggerManager:
    """Enhanced logging manager with multi-channel support and configurable formats."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.channel_handlers: Dict[LogChannel, logging.Handler] = {}
        self.configured_loggers: Dict[str, structlog.BoundLogger] = {}

        self._setup_logging()

    def _setup_logging(self) -> None:
        """Setup enhanced logging with configurable formats."""
        if self.settings.logging.file_enabled:
            create_log_directory_structure(self.settings.logs_dir)

        self._setup_console_logging()

        if self.settings.logging.file_enabled:
            self._setup_file_logging()

        if self.settings.logging.multi_channel_enabled:
            self._setup_multi_channel_logging()

        self._configure_structlog()

    def _setup_console_logging(self) -> None:
        """Setup console logging with configurable format."""
        root_logger = logging.getLogger()
        level = getattr(logging, self.settings.logging.level.upper())
        root_logger.setLevel(level)

        if not self.settings.logging.console_enabled:
            return

        console_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.console_json_format
            else structlog.dev.ConsoleRenderer()
        )
        formatter = structlog.stdlib.ProcessorFormatter(
            processor=console_processor,
            foreign_pre_chain=_foreign_pre_chain(),
        )

        # If a console handler already exists (e.g., set by uvicorn), reconfigure it
        for handler in root_logger.handlers:
            if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) == sys.stdout:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                return

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    def _file_formatter(self) -> structlog.stdlib.ProcessorFormatter:
        file_processor = (
            structlog.processors.JSONRenderer()
            if self.settings.logging.json_format
            else structlog.processors.KeyValueRenderer(key_order=["event", "level", "timestamp"])
        )
        return structlog.stdlib.ProcessorFormatter(
            processor=file_processor,
            foreign_pre_chain=_foreign_pre_chain(),
        )

    def _rotating_handler(self, filename, backup_count: int) -> logging.Handler:
        return logging.handlers.RotatingFileHandler(
            filename=filename,
            maxBytes=self.settings.logging.file_max_bytes,
            backupCount=backup_count,
            encoding="utf-8"
        )

    def _setup_file_logging(self) -> None:
        """Setup the combined application log file."""
        from pathlib import Path

        log_file = Path(self.settings.logs_dir) / "neural_core.log"
        root_logger = logging.getLogger()

        for handler in root_logger.handlers:
            if (isinstance(handler, logging.handlers.RotatingFileHandler) and
                    Path(handler.baseFilename) == log_file.resolve()):
                return  # File handler already configured

        file_handler = self._rotating_handler(log_file, self.settings.logging.file_backup_count)
        file_handler.setLevel(getattr(logging, self.settings.logging.level.upper()))
        file_handler.setFormatter(self._file_formatter())
        root_logger.addHandler(file_handler)

    def _setup_multi_channel_logging(self) -> None:
        """Setup multi-channel logging with dedicated files."""
        # Channel handlers are file-backed
        if not self.settings.logging.file_enabled:
            return

        for channel in LogChannel:
            config = get_channel_config(channel)
            handler = self._rotating_handler(
                config.get_file_path(self.settings.logs_dir), config.backup_count
            )
            handler.setLevel(getattr(logging, config.level))
            handler.setFormatter(self._file_formatter())
            if channel != LogChannel.ERROR:
                allowed_prefixes = ["uvicorn", "fastapi", "starlette"] if channel == LogChannel.API else []
                handler.addFilter(ChannelFilter(channel.value, allowed_prefixes))
            self.channel_handlers[channel] = handler

        # ERROR sees every ERROR+ record; API and DATABASE also take framework records
        _attach(self.channel_handlers[LogChannel.ERROR], "")
        _attach(self.channel_handlers[LogChannel.API], "uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")
        _attach(self.channel_handlers[LogChannel.DATABASE], "sqlalchemy.engine", "sqlalchemy.pool")
        for name in ("sqlalchemy.engine", "sqlalchemy.pool"):
            if logging.getLogger(name).level == logging.NOTSET:
                logging.getLogger(name).setLevel(logging.WARNING)

    def _configure_structlog(self) -> None:
        """Configure structlog with appropriate processors."""
        _configure_structlog_processors(self.settings)

    def get_logger(self, name: str, component: Optional[str] = None) -> structlog.BoundLogger:
        """Get a structured logger for a component."""
        cache_key = f"{name}:{component}"
        if cache_key in self.configured_loggers:
            return self.configured_loggers[cache_key]

        logger = structlog.get_logger(name)

        if component:
            logger = logger.bind(component=component)
            self._route(name, get_channel_for_component(component))

        self.configured_loggers[cache_key] = logger
        return logger

    def get_channel_logger(self, name: str, channel: LogChannel) -> structlog.BoundLogger:
        """Get a logger for a specific channel."""
        self._route(name, channel)
        return self.get_logger(name).bind(channel=channel.value)

    def _route(self, name: str, channel: LogChannel) -> None:
        handler = self.channel_handlers.get(channel)
        if handler is not None:
            _attach(handler, name)


def _configure_structlog_processors(settings: Optional[Settings] = None) -> None:
    """Shared structlog processor chain; rendering is deferred to stdlib handlers."""

    def add_correlation_id(logger, name, event_dict):
        """Stamp the current request's correlation id and request id on the event"""
        from core.logging.correlation import CorrelationIdManager
        correlation_id = CorrelationIdManager.get_correlation_id()
        if correlation_id:
            event_dict.setdefault('correlation_id', correlation_id)
        request_id = CorrelationIdManager.get_correlation_context().get('request_id')
        if request_id:
            event_dict.setdefault('request_id', request_id)
        return event_dict

    def add_standard_context(logger, name, event_dict):
        """Bind standard context fields once from settings."""
        if settings is not None:
            event_dict.setdefault('env', settings.environment.value)
            event_dict.setdefault('app', settings.app_name)
        return event_dict

    keys_to_redact = set(
        (settings.logging.redact_keys if settings is not None else None) or DEFAULT_REDACT_KEYS
    )

    def redact_sensitive(logger, name, event_dict):
        """Redact sensitive fields from event dict recursively."""

        def _redact(obj):
            if isinstance(obj, dict):
                out = {}
                for k, v in obj.items():
                    if isinstance(k, str) and k.lower() in keys_to_redact:
                        out[k] = '[REDACTED]'
                    else:
                        out[k] = _redact(v)
                return out
            if isinstance(obj, list):
                return [_redact(v) for v in obj]
            return obj

        return _redact(event_dict)

    processors = [
        add_correlation_id,
        add_standard_context,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_sensitive,
        # Defer final rendering to handlers via ProcessorFormatter
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def configure_enhanced_logging(settings: Settings) -> None:
    """Configure enhanced logging system."""
    global _logger_manager, _enhanced_logging_configured

    if _enhanced_logging_configured:
        return

    _logger_manager = EnhancedLoggerManager(settings)
    _enhanced_logging_configured = True


def get_enhanced_logger(name: str, component: Optional[str] = None) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    if _logger_manager is None:
        # Not configured yet (tests, scripts): stdlib handlers render the events
        logger = structlog.get_logger(name)
        if component:
            logger = logger.bind(component=component)
        return logger

    return _logger_manager.get_logger(name, component)


def get_channel_logger(name: str, channel: LogChannel) -> structlog.BoundLogger:
    """Get a logger for a specific channel."""
    if _logger_manager is None:
        return get_enhanced_logger(name).bind(channel=channel.value)

    return _logger_manager.get_channel_logger(name, channel)


def get_trading_logger(name: str) -> structlog.BoundLogger:
    """Get a trading-specific logger."""
    return get_channel_logger(name, LogChannel.TRADING)


def get_api_logger(name: str) -> structlog.BoundLogger:
    """Get an API logger."""
    return get_channel_logger(name, LogChannel.API)


def get_audit_logger(name: str) -> structlog.BoundLogger:
    """Get an audit logger."""
    return get_channel_logger(name, LogChannel.AUDIT)


def get_error_logger(name: str) -> structlog.BoundLogger:
    """Get an error logger."""
    return get_channel_logger(name, LogChannel.ERROR)


def get_database_logger(name: str) -> structlog.BoundLogger:
    """Get a database logger."""
    return get_channel_logger(name, LogChannel.DATABASE)


def bind_broker_context(logger: structlog.BoundLogger, broker: str) -> structlog.BoundLogger:
    """Bind `broker` and `broker_context` so per-broker events can be filtered either way."""
    return logger.bind(broker=broker, broker_context=broker)
