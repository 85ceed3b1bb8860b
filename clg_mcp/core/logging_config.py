import logging
import sys
from typing import Any, Dict

from clg_mcp.security.utils import mask_sensitive_data

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SensitiveDataFilter(logging.Filter):
    """
    A logging filter that masks credentials within log records.

    It applies the `mask_sensitive_data` utility to the log message and its arguments.
    """
    def __init__(self, name: str = 'SensitiveDataFilter'):
        """Initialize the filter."""
        super().__init__(name)

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter the log record, masking sensitive data in msg and args.

        Args:
            record: The logging record to filter.

        Returns:
            True (always allows the record to pass after masking).
        """
        if isinstance(record.msg, str):
            record.msg = mask_sensitive_data(record.msg)

        # Only %-style args are visible here; f-string messages are covered by the msg pass above.
        if record.args:
            if isinstance(record.args, dict):
                record.args = mask_sensitive_data(record.args)
            else:
                record.args = tuple(mask_sensitive_data(arg) for arg in record.args)

        return True


def _reset_root_logger(level: str) -> logging.Logger:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.setLevel(level.upper())
    return root_logger


def setup_logging(level: str = 'INFO', mask_sensitive: bool = True) -> None:
    """
    Configure logging for the CLG MCP Server.

    All records go to stderr. The SSE stream and HTTP bodies never carry log output.

    Args:
        level: Logging level (default: 'INFO')
        mask_sensitive: Attach the SensitiveDataFilter to the handler
    """
    root_logger = _reset_root_logger(level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
    if mask_sensitive:
        stderr_handler.addFilter(SensitiveDataFilter())
    root_logger.addHandler(stderr_handler)

    for logger_name in ('clg_mcp', 'clg_mcp.core', 'clg_mcp.tools', 'clg_mcp.performance'):
        package_logger = logging.getLogger(logger_name)
        package_logger.setLevel(level.upper())
        package_logger.propagate = True
        package_logger.handlers = []

    # aiohttp access logs repeat every request line, keep them quiet unless debugging
    if level.upper() != 'DEBUG':
        logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
        logging.getLogger('httpx').setLevel(logging.WARNING)

    logger.info("Logging setup complete.")


def setup_logging_from_config(logging_config: Dict[str, Any]) -> None:
    """
    Set up logging from a logging config dictionary (the `logging` section of config.yaml).
    Supports multiple handlers (StreamHandler, FileHandler) and custom formats.
    """
    root_logger = _reset_root_logger(logging_config.get('level', 'INFO'))
    formatter = logging.Formatter(logging_config.get('format', DEFAULT_FORMAT))
    mask_sensitive = logging_config.get('mask_sensitive', True)

    handlers = logging_config.get('handlers') or [{'type': 'StreamHandler'}]
    for handler_cfg in handlers:
        if handler_cfg['type'] == 'StreamHandler':
            handler = logging.StreamHandler(sys.stderr)
        elif handler_cfg['type'] == 'FileHandler':
            handler = logging.FileHandler(handler_cfg['filename'])
        else:
            logger.warning("Ignoring unknown log handler type: %s", handler_cfg['type'])
            continue
        handler.setLevel(handler_cfg.get('level', logging_config.get('level', 'INFO')).upper())
        handler.setFormatter(formatter)
        if mask_sensitive:
            handler.addFilter(SensitiveDataFilter())
        root_logger.addHandler(handler)
