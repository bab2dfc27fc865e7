from typing import Optional


class AutoLotError(Exception):
    """Base exception for AutoLot errors."""
    pass

class ConfigError(AutoLotError):
    """Import configuration missing, invalid or not found."""
    pass

class ConfigNotFoundError(ConfigError):
    pass

class ConfigConflictError(ConfigError):
    """Another import config of the same dealer already uses the name."""
    pass

class SourceConnectionError(AutoLotError):
    """Source cannot be reached, authenticated or located. Fatal to a run."""
    pass

class FormatError(AutoLotError):
    """Source is structurally unparsable per its file format settings. Fatal to a run."""

    def __init__(self, message: str, row_number: Optional[int] = None):
        super().__init__(message)
        self.row_number = row_number

class MappingError(AutoLotError):
    """A single field failed coercion, transformation or a required check."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

class ValidationError(AutoLotError):
    """A mapped record broke a cross-field business rule."""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message

class ThresholdExceededError(AutoLotError):
    """Errored rows exceeded the run's error budget."""

    def __init__(self, errored: int, max_errors: int):
        super().__init__(f"Error budget exceeded: {errored} errored rows > max_errors={max_errors}")
        self.errored = errored
        self.max_errors = max_errors

class StorageError(AutoLotError):
    """A batch commit failed for infrastructural reasons."""
    pass

class RunAlreadyActiveError(AutoLotError):
    """A run for the same import config is still running."""

    def __init__(self, config_id: int, run_id: Optional[str] = None):
        super().__init__(f"Import config {config_id} already has a running import ({run_id or 'unknown'})")
        self.config_id = config_id
        self.run_id = run_id
