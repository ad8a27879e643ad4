from __future__ import annotations


class KeyServiceError(Exception):
    """Base class for errors surfaced by the key service."""
    status_code = 500


class ValidationError(KeyServiceError):
    status_code = 400


class UnsupportedKeyType(ValidationError):
    pass


class UnsupportedCurve(ValidationError):
    pass


class UnsupportedOperation(KeyServiceError):
    status_code = 400


class NotFound(KeyServiceError):
    status_code = 404


class PersistenceFailure(KeyServiceError):
    status_code = 500


class ConfigurationError(KeyServiceError):
    status_code = 500


class DuplicateKey(KeyServiceError):
    status_code = 409
