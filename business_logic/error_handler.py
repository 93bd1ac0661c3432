"""
Comprehensive error handling and user feedback system.

This module provides centralized error classification, retry mechanisms,
and user-friendly feedback for the budget allocation components.
"""

import logging
import time
from collections import Counter
from typing import Dict, Any, List, Optional, Callable, Tuple
from enum import Enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from data.store import StoreError
from .hierarchy_config import HierarchyConfigError

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for better classification."""
    STORE_ERROR = "store_error"
    CONFIG_ERROR = "config_error"
    DATA_ERROR = "data_error"
    VALIDATION_ERROR = "validation_error"
    SYSTEM_ERROR = "system_error"


@dataclass
class ErrorInfo:
    """Structured error information."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    user_message: str
    technical_details: Optional[str] = None
    suggested_action: Optional[str] = None
    retry_possible: bool = False
    attempts: int = 1
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now()


class RetryConfig:
    """Retry policy for store-bound operations such as full tree rebuilds."""

    def __init__(self, max_attempts: int = 3, base_delay: float = 1.0,
                 exponential_backoff: bool = True, max_delay: float = 60.0):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.exponential_backoff = exponential_backoff
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based failed attempt."""
        if not self.exponential_backoff:
            return min(self.base_delay, self.max_delay)
        return min(self.base_delay * (2 ** attempt), self.max_delay)

class ErrorHandler:
    """
    Centralized error handling and user feedback system.

    Classifies failures raised around store calls and configuration
    changes, retries retryable operations, and turns errors into
    notifications the UI can show.
    """

    def __init__(self):
        self.error_history: List[ErrorInfo] = []
        self.max_history = 100

    def handle_store_error(self, error: Exception, context: str = "") -> ErrorInfo:
        """
        Handle persistent store failures.

        Args:
            error: The store exception
            context: Additional context about the operation

        Returns:
            ErrorInfo object with structured error information
        """
        error_str = str(error).lower()

        if "foreign key" in error_str:
            return ErrorInfo(
                category=ErrorCategory.STORE_ERROR,
                severity=ErrorSeverity.ERROR,
                message=f"Store rejected a reference in {context}: {str(error)}",
                user_message="The budget breakdown could not be saved because a referenced row is missing.",
                technical_details=str(error),
                suggested_action="Rebuild the budget distribution for this plan.",
                retry_possible=True
            )

        if "timeout" in error_str or "connection" in error_str:
            return ErrorInfo(
                category=ErrorCategory.STORE_ERROR,
                severity=ErrorSeverity.WARNING,
                message=f"Store unreachable in {context}: {str(error)}",
                user_message="The database could not be reached. The system will retry automatically.",
                suggested_action="Check your connection and try again.",
                retry_possible=True
            )

        return ErrorInfo(
            category=ErrorCategory.STORE_ERROR,
            severity=ErrorSeverity.ERROR,
            message=f"Store error in {context}: {str(error)}",
            user_message="An error occurred while saving plan data.",
            technical_details=str(error),
            suggested_action="Please try again. If the problem persists, contact support.",
            retry_possible=True
        )

    def handle_config_error(self, error: Exception, context: str = "") -> ErrorInfo:
        """Invalid hierarchy configurations are user errors and never retried."""
        return ErrorInfo(
            category=ErrorCategory.CONFIG_ERROR,
            severity=ErrorSeverity.WARNING,
            message=f"Invalid configuration in {context}: {str(error)}",
            user_message=str(error),
            suggested_action="Use up to three distinct levels: subdivision, moment, funnel stage.",
            retry_possible=False
        )

    def handle_data_error(self, error: Exception, context: str = "") -> ErrorInfo:
        return ErrorInfo(
            category=ErrorCategory.DATA_ERROR,
            severity=ErrorSeverity.ERROR,
            message=f"Data processing error in {context}: {str(error)}",
            user_message="Plan data could not be processed.",
            technical_details=str(error),
            suggested_action="Check the plan's lines and budget values and try again.",
            retry_possible=False
        )

    def retry_with_backoff(self, func: Callable, config: RetryConfig = None,
                           context: str = "",
                           on_retry: Optional[Callable[[int, ErrorInfo], None]] = None) -> Tuple[bool, Any, Optional[ErrorInfo]]:
        """
        Run an operation until it succeeds, a non-retryable error occurs,
        or the attempts in the retry policy are used up.

        Args:
            func: Zero-argument operation to run
            config: Retry policy (RetryConfig() when omitted)
            context: Operation name used in logs and error messages
            on_retry: Called with the failed attempt number and its ErrorInfo
                before waiting for the next attempt

        Returns:
            Tuple of (success, result, error_info)
        """
        config = config or RetryConfig()
        error_info = None

        for attempt in range(config.max_attempts):
            try:
                return True, func(), None
            except Exception as e:
                error_info = self.classify_error(e, context)
                error_info.attempts = attempt + 1
                logger.warning(f"{context} failed on attempt {attempt + 1} of {config.max_attempts}: {str(e)}")

            if not error_info.retry_possible or attempt + 1 >= config.max_attempts:
                break

            if on_retry is not None:
                on_retry(attempt + 1, error_info)

            delay = config.delay_for(attempt)
            logger.info(f"Retrying {context} in {delay} seconds")
            time.sleep(delay)

        return False, None, error_info

    def classify_error(self, error: Exception, context: str = "") -> ErrorInfo:
        """
        Classify an error and return appropriate ErrorInfo.

        Args:
            error: The exception to classify
            context: Additional context about the operation

        Returns:
            ErrorInfo object with structured error information
        """
        if isinstance(error, HierarchyConfigError):
            return self.handle_config_error(error, context)

        if isinstance(error, (StoreError, ConnectionError, TimeoutError)):
            return self.handle_store_error(error, context)

        if isinstance(error, (ValueError, TypeError, KeyError)):
            return self.handle_data_error(error, context)

        return ErrorInfo(
            category=ErrorCategory.SYSTEM_ERROR,
            severity=ErrorSeverity.ERROR,
            message=f"Unexpected error in {context}: {str(error)}",
            user_message="An unexpected error occurred. Please try again or contact support.",
            technical_details=str(error),
            suggested_action="Try again. If the problem persists, contact support with the error details.",
            retry_possible=True
        )

    def create_user_notification(self, error_info: ErrorInfo) -> Dict[str, Any]:
        """
        Create a notification the plan editor can display.

        Args:
            error_info: Structured error information

        Returns:
            Dictionary with notification data for UI display
        """
        severity = error_info.severity
        notification = {
            'type': "error" if severity == ErrorSeverity.CRITICAL else severity.value,
            'title': self._get_error_title(error_info),
            'message': error_info.user_message,
            'category': error_info.category.value,
            'timestamp': error_info.timestamp.isoformat(),
            'dismissible': severity in (ErrorSeverity.INFO, ErrorSeverity.WARNING),
            'retry_possible': error_info.retry_possible,
        }

        if error_info.suggested_action:
            notification['action'] = error_info.suggested_action

        if error_info.attempts > 1:
            notification['attempts'] = error_info.attempts

        if error_info.technical_details and severity == ErrorSeverity.CRITICAL:
            notification['technical_details'] = error_info.technical_details

        return notification

    def _get_error_title(self, error_info: ErrorInfo) -> str:
        title_map = {
            ErrorCategory.STORE_ERROR: "Save Error",
            ErrorCategory.CONFIG_ERROR: "Hierarchy Configuration Error",
            ErrorCategory.DATA_ERROR: "Data Error",
            ErrorCategory.VALIDATION_ERROR: "Input Validation Error",
            ErrorCategory.SYSTEM_ERROR: "System Error"
        }

        return title_map.get(error_info.category, "Error")

    def log_error(self, error_info: ErrorInfo, context: str = ""):
        """Record an error in the history and log it at its severity."""
        self.error_history.append(error_info)
        del self.error_history[:-self.max_history]

        log_level = {
            ErrorSeverity.INFO: logging.INFO,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.CRITICAL: logging.CRITICAL,
        }[error_info.severity]
        logger.log(log_level, f"{context}: {error_info.message}")

    def get_error_statistics(self, window: timedelta = timedelta(hours=24)) -> Dict[str, Any]:
        """
        Summarize logged errors.

        Args:
            window: How far back the breakdowns look

        Returns:
            Dictionary with totals and category/severity breakdowns
        """
        if not self.error_history:
            return {'total_errors': 0}

        cutoff = datetime.now() - window
        recent: List[ErrorInfo] = [err for err in self.error_history if err.timestamp > cutoff]

        return {
            'total_errors': len(self.error_history),
            'recent_errors': len(recent),
            'retryable_errors': sum(1 for err in recent if err.retry_possible),
            'category_breakdown': dict(Counter(err.category.value for err in recent)),
            'severity_breakdown': dict(Counter(err.severity.value for err in recent)),
        }


# Global error handler instance
error_handler = ErrorHandler()
