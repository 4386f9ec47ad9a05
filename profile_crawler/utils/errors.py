"""
Custom exception classes and error handling utilities.
"""

import time
import traceback
from functools import wraps
from typing import Optional, Dict, Any


class ProfileCrawlerError(Exception):
    """Base exception for all profile crawler errors."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class CrawlerError(ProfileCrawlerError):
    """Exception raised during browser or crawling operations."""
    pass


class TransientNetworkError(CrawlerError):
    """Timeouts, resets and other failures that are worth retrying."""
    pass


class AuthExpiredError(CrawlerError):
    """The site redirected to login and re-authentication did not recover it."""
    pass


class RateLimitSignal(CrawlerError):
    """The site answered with 429/403 or a block page."""
    
    def __init__(self, message: str, status: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.status = status


class ExtractionValidationError(CrawlerError):
    """A page loaded but the extracted record failed validation."""
    pass


class UnrecoverableNavigationError(CrawlerError):
    """Navigation kept failing after the bounded retries."""
    pass


class DatabaseError(ProfileCrawlerError):
    """Exception raised during database operations."""
    pass


class CheckpointError(DatabaseError):
    """Exception raised while reading or writing checkpoints."""
    pass


class ConfigurationError(ProfileCrawlerError):
    """Exception raised for configuration-related issues."""
    pass


class ValidationError(ProfileCrawlerError):
    """Exception raised for data validation failures."""
    pass


def handle_error(
    error: Exception,
    logger,
    context: Optional[Dict[str, Any]] = None,
    reraise: bool = True
) -> None:
    """
    Log an error with context information.
    
    Args:
        error: The exception that occurred
        logger: Logger instance to use for logging
        context: Additional context information
        reraise: Whether to reraise the exception after logging
    """
    error_context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        **(context or {})
    }
    
    if isinstance(error, ProfileCrawlerError):
        error_context.update(error.details)
    
    logger.error(f"Error occurred: {error_context}\n{traceback.format_exc()}")
    
    if reraise:
        raise error


def retry_on_error(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,),
    sleep_func=time.sleep
):
    """
    Decorator for retrying functions on specific exceptions.
    
    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by after each attempt
        exceptions: Tuple of exception types to retry on
        sleep_func: Sleep function, replaceable in tests
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = delay
            
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions:
                    if attempt >= max_attempts - 1:
                        raise
                    sleep_func(current_delay)
                    current_delay *= backoff_factor
        
        return wrapper
    return decorator
