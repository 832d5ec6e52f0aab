class PlanningError(Exception):
    """Base exception for the forecast reconciliation engine."""

    status_code = 500

    def __init__(self, message=None, code=None, details=None):
        """Initialize the exception.

        Args:
            message: Error message
            code: Error code
            details: Additional error details
        """
        self.message = message or "An error occurred in the planning engine"
        self.code = code
        self.details = details
        super().__init__(self.message)

    def __str__(self):
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def to_dict(self):
        """Convert the exception to a dictionary."""
        error_dict = {
            "error": self.__class__.__name__,
            "message": self.message,
        }

        if self.code:
            error_dict["code"] = self.code

        if self.details:
            error_dict["details"] = self.details

        return error_dict


class ValidationError(PlanningError):
    """Required filter scope or edit parameters are missing or invalid."""

    status_code = 422

    def __init__(self, message=None, code=None, details=None):
        message = message or "Validation error"
        super().__init__(message, code, details)


class PartialDataError(PlanningError):
    """Some records could not be matched to a customer or location."""

    status_code = 422

    def __init__(self, message=None, code=None, details=None):
        message = message or "Some records could not be resolved"
        super().__init__(message, code, details)


class DistributionError(PlanningError):
    """One or more writes of a distribution batch failed."""

    status_code = 502

    def __init__(self, message=None, code=None, details=None):
        message = message or "Distribution error"
        super().__init__(message, code, details)


class ConflictError(PlanningError):
    """A concurrent edit touched an overlapping key; retry with fresh data."""

    status_code = 409

    def __init__(self, message=None, code=None, details=None):
        message = message or "Concurrent edit conflict"
        super().__init__(message, code, details)


class TimeoutError(PlanningError):
    """A query, computation or write exceeded its time budget."""

    status_code = 504

    def __init__(self, message=None, code=None, details=None):
        message = message or "Operation timed out; narrow the scope (fewer periods or products)"
        super().__init__(message, code, details)


class PersistenceError(PlanningError):
    """A single write could not be persisted by the store."""

    def __init__(self, message=None, code=None, details=None):
        message = message or "Persistence error"
        super().__init__(message, code, details)
