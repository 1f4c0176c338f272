"""Typed errors and the closed error taxonomy used for reporting failures."""

from enum import Enum
from typing import Optional, Union


class ErrorType(str, Enum):
    """Closed taxonomy persisted alongside failure messages"""
    RATE_LIMIT = "rate_limit"
    API_KEY = "api_key"
    AI_ERROR = "ai_error"
    DATA_FETCH = "data_fetch"
    DATABASE = "database"
    TIMEOUT = "timeout"
    OTHER = "other"


class RebalanceEngineError(Exception):
    """Base error carrying a taxonomy category"""

    error_type: ErrorType = ErrorType.OTHER

    def __init__(self, message: str, error_type: Optional[ErrorType] = None):
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type


class InvalidRequestError(RebalanceEngineError):
    """Raised when a rebalance request is missing required fields"""
    pass


class ProviderError(RebalanceEngineError):
    """Raised when the text-generation provider call fails"""

    def __init__(self, message: str, status: Optional[int] = None):
        error_type = classify_error(message)
        if error_type == ErrorType.OTHER:
            error_type = ErrorType.AI_ERROR
        super().__init__(message, error_type)
        self.status = status


class RateLimitError(ProviderError):
    """Raised when the provider reports quota or credit exhaustion"""
    error_type = ErrorType.RATE_LIMIT

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status)
        self.error_type = ErrorType.RATE_LIMIT


class ApiKeyError(RebalanceEngineError):
    """Raised when a collaborator rejects credentials"""
    error_type = ErrorType.API_KEY


class ExtractionError(RebalanceEngineError):
    """Raised when generation output cannot be turned into orders"""
    error_type = ErrorType.AI_ERROR


class DataFetchError(RebalanceEngineError):
    """Raised when broker or analysis data cannot be fetched"""
    error_type = ErrorType.DATA_FETCH


class StoreError(RebalanceEngineError):
    """Raised when the record store fails"""
    error_type = ErrorType.DATABASE


class WorkflowTimeoutError(RebalanceEngineError):
    """Raised when a rebalance attempt exceeds its watchdog window"""
    error_type = ErrorType.TIMEOUT


class InvalidTransitionError(RebalanceEngineError):
    """Raised when a status change leaves a terminal state"""
    pass


class RebalanceStopped(Exception):
    """Raised at a checkpoint when the request was cancelled or deleted"""

    def __init__(self, reason: str, is_cancelled: bool = False, is_deleted: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.is_cancelled = is_cancelled
        self.is_deleted = is_deleted


# Checked in order, first match wins
_ERROR_PATTERNS = [
    (ErrorType.RATE_LIMIT, ('rate limit', 'quota', 'insufficient_quota', '429',
                            'requires more credits', 'can only afford')),
    (ErrorType.API_KEY, ('api key', 'api_key', 'unauthorized', '401', 'authentication')),
    (ErrorType.AI_ERROR, ('ai provider', 'model', 'extraction', 'parse')),
    (ErrorType.DATA_FETCH, ('fetch', 'network', 'broker', 'portfolio')),
    (ErrorType.DATABASE, ('database', 'store', 'redis')),
    (ErrorType.TIMEOUT, ('timeout', 'timed out')),
]


def classify_error(error: Union[BaseException, str, None]) -> ErrorType:
    """
    Map an exception or message onto the error taxonomy.

    Typed engine errors keep their own category; anything else is matched
    against known fault signatures.
    """
    if error is None:
        return ErrorType.OTHER

    if isinstance(error, RebalanceEngineError) and error.error_type != ErrorType.OTHER:
        return error.error_type

    if isinstance(error, TimeoutError):
        return ErrorType.TIMEOUT

    text = str(error).lower()
    for error_type, patterns in _ERROR_PATTERNS:
        if any(pattern in text for pattern in patterns):
            return error_type
    return ErrorType.OTHER
