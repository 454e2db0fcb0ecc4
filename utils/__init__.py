"""Utils package for the outreach service."""
from .logging_utils import (
    setup_logging,
    get_logger,
    JsonFormatter,
    ContextFormatter,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'JsonFormatter',
    'ContextFormatter',
]
