"""Memory system exceptions."""


class MemorySystemError(Exception):
    """Base class for memory system errors."""

    pass


class ExternalServiceError(MemorySystemError):
    """An embedding, LLM or profile call failed."""

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service} failed: {message}")


class ValidationError(MemorySystemError):
    """Invalid input to a memory operation."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")


class MaintenanceRecordError(MemorySystemError):
    """Processing a single record during maintenance failed."""

    def __init__(self, record_id: str, strategy: str, reason: str):
        self.record_id = record_id
        self.strategy = strategy
        self.reason = reason
        super().__init__(
            f"Maintenance of {record_id} ({strategy}) failed: {reason}"
        )
