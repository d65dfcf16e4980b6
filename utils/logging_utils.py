"""
Logging configuration for the email delivery scheduler.

Module loggers live under the `mailscheduler.` namespace and log event-style
messages ("run_sent", "enrollment_advanced") with `extra=` context.
"""
import logging
import sys
from functools import wraps
import time
from typing import Callable, Any

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Handlers installed by setup_logging, replaced on reconfiguration
_installed_handlers = []


def setup_logging(level: str = "INFO", log_file: str = None) -> logging.Logger:
    """
    Configure the root logger: stdout, plus `log_file` when given.

    Safe to call more than once; the previous handlers are replaced.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root_logger = logging.getLogger()
    for handler in _installed_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root_logger.addHandler(handler)
        _installed_handlers.append(handler)
    root_logger.setLevel(log_level)

    # pymongo's server-monitoring chatter drowns out the scheduler at DEBUG
    logging.getLogger("pymongo").setLevel(max(log_level, logging.WARNING))

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the mailscheduler namespace."""
    if not name.startswith("mailscheduler"):
        name = f"mailscheduler.{name}"
    return logging.getLogger(name)


# =============================================================================
# RETRY DECORATOR
# =============================================================================

def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Callable = None
):
    """
    Decorator that retries a function with exponential backoff.

    Only wrap idempotent calls (reads); a retried send could deliver twice.
    
    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        backoff_factor: Multiplier for delay after each retry
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
    
    Usage:
        @retry_with_backoff(max_retries=3, exceptions=(AutoReconnect,))
        def get_due(now):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = initial_delay
            last_exception = None
            
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    
                    if attempt == max_retries:
                        break
                    
                    if on_retry:
                        on_retry(attempt + 1, e, delay)
                    else:
                        get_logger(func.__module__).warning(
                            f"{func.__name__} failed ({e}), retrying in {delay}s "
                            f"(attempt {attempt + 1}/{max_retries})"
                        )
                    
                    time.sleep(delay)
                    delay *= backoff_factor
            
            # All retries exhausted
            raise last_exception
        
        return wrapper
    return decorator
