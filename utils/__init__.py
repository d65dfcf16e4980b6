"""Utils package for the email delivery scheduler."""
from .logging_utils import (
    setup_logging,
    get_logger,
    retry_with_backoff,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'retry_with_backoff',
]
