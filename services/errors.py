class ConfigurationError(RuntimeError):
    """Unrecoverable configuration problem detected at startup."""


class ReconciliationError(RuntimeError):
    """A reconciliation batch could not be written; nothing from the batch was committed."""

    def __init__(self, message, observation_count=0):
        super().__init__(message)
        self.observation_count = observation_count
