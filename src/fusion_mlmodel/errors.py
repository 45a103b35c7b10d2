"""Exception types for the model publishing pipeline."""


class FusionModelError(Exception):
    """Base exception for fusion-mlmodel errors."""

    pass


class UnsupportedModelError(FusionModelError, TypeError):
    """Model object supports neither persistence capability."""

    pass


class ManifestError(FusionModelError):
    """Required metadata for the model family is missing or invalid."""

    pass


class StagingError(FusionModelError):
    """Staging directory or manifest file could not be written."""

    pass


class ArchiveError(FusionModelError):
    """Reading or writing the model archive failed."""

    pass


class ConfigError(FusionModelError, ValueError):
    """Malformed host, model id or configuration value."""

    pass


class InvalidModelIdError(ConfigError):
    """Model id is unusable as a directory name or URL path segment."""

    pass


class UploadError(FusionModelError):
    """Transport-level failure sending a request to Fusion."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(UploadError):
    """Fusion rejected the session login."""

    pass
