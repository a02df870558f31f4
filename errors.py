"""
Error taxonomy for the POKT monitoring service
"""

from typing import List, Optional


class MonitoringError(Exception):
    """Base exception class for monitoring errors"""
    pass


class SourceError(MonitoringError):
    """Raised when an account's transactions cannot be fetched or parsed"""
    pass


class BlockLookupError(MonitoringError):
    """Raised when the node cannot return a block time (unknown height or transport failure)"""
    pass


class ResolutionError(MonitoringError):
    """Raised when a block height cannot be resolved to a timestamp"""

    def __init__(self, message: str, height: Optional[int] = None):
        super().__init__(message)
        self.height = height


class ClassificationError(MonitoringError):
    """Raised when a single raw transaction is malformed"""

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class CacheError(MonitoringError):
    """Raised when a cache write fails"""
    pass


class RequestValidationError(MonitoringError):
    """Raised when an API request is missing or has invalid parameters"""
    pass


class AggregationCancelled(MonitoringError):
    """Raised when an in-flight aggregation is cancelled by its caller"""
    pass


class ExclusionThresholdExceeded(MonitoringError):
    """Too many transactions were excluded for the summaries to be trusted"""

    def __init__(self, excluded: int, total: int, max_rate: float, errors: List[MonitoringError]):
        self.excluded = excluded
        self.total = total
        self.max_rate = max_rate
        self.errors = errors
        super().__init__(
            f"{excluded} of {total} transactions excluded "
            f"(max exclusion rate {max_rate:.2%}); first error: {errors[0] if errors else 'n/a'}"
        )


class ResolutionThresholdExceeded(ExclusionThresholdExceeded, ResolutionError):
    """Exclusion threshold exceeded, mostly because of block time resolution failures"""
    pass


class ClassificationThresholdExceeded(ExclusionThresholdExceeded, ClassificationError):
    """Exclusion threshold exceeded, mostly because of malformed transactions"""
    pass
