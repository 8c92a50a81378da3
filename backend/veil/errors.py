from __future__ import annotations

from typing import Any

# Error codes follow the ``anonymization.<kind>`` convention so that callers
# can branch on them without importing the exception classes.
KEY_NOT_FOUND = "anonymization.key_not_found"
NO_ACTIVE_KEY = "anonymization.no_active_key"
KEY_ROTATION_FAILED = "anonymization.key_rotation_failed"
ENCRYPTION_FAILED = "anonymization.encryption_failed"
DECRYPTION_FAILED = "anonymization.decryption_failed"
TOKEN_NOT_FOUND = "anonymization.token_not_found"
TOKENIZATION_FAILED = "anonymization.tokenization_failed"
TECHNIQUE_NOT_APPLICABLE = "anonymization.technique_not_applicable"
TECHNIQUE_NOT_REGISTERED = "anonymization.technique_not_registered"
ANONYMIZATION_FAILED = "anonymization.anonymization_failed"
PSEUDONYMIZATION_FAILED = "anonymization.pseudonymization_failed"
DEPSEUDONYMIZATION_FAILED = "anonymization.depseudonymization_failed"
RISK_ASSESSMENT_FAILED = "anonymization.risk_assessment_failed"
STORE_ERROR = "anonymization.store_error"
INVALID_PARAMETER = "anonymization.invalid_parameter"


class AnonymizationError(Exception):
    """Base class for every expected failure raised by the engine.

    ``code`` is one of the module-level error codes and ``metadata`` carries
    structured context (key id, field name, technique, ...).  Real values are
    never placed in either.
    """

    code: str = ANONYMIZATION_FAILED

    def __init__(self, message: str, **metadata: Any) -> None:
        self.message = message
        self.metadata = metadata
        super().__init__(message)


class KeyNotFoundError(AnonymizationError):
    code = KEY_NOT_FOUND

    def __init__(self, key_id: str) -> None:
        self.key_id = key_id
        super().__init__(f"Cryptographic key '{key_id}' was not found", key_id=key_id)


class NoActiveKeyError(AnonymizationError):
    code = NO_ACTIVE_KEY

    def __init__(self, algorithm: str | None = None) -> None:
        message = "No active cryptographic key is available"
        if algorithm:
            message += f" for algorithm '{algorithm}'"
        super().__init__(message, algorithm=algorithm)


class KeyRotationFailedError(AnonymizationError):
    code = KEY_ROTATION_FAILED

    def __init__(self, key_id: str, reason: str) -> None:
        self.key_id = key_id
        self.reason = reason
        super().__init__(
            f"Rotation of key '{key_id}' failed: {reason}", key_id=key_id, reason=reason
        )


class EncryptionFailedError(AnonymizationError):
    code = ENCRYPTION_FAILED

    def __init__(self, key_id: str, reason: str = "") -> None:
        self.key_id = key_id
        message = f"Encryption with key '{key_id}' failed"
        if reason:
            message += f": {reason}"
        super().__init__(message, key_id=key_id)


class DecryptionFailedError(AnonymizationError):
    code = DECRYPTION_FAILED

    def __init__(self, key_id: str, reason: str = "") -> None:
        self.key_id = key_id
        message = f"Decryption with key '{key_id}' failed"
        if reason:
            message += f": {reason}"
        super().__init__(message, key_id=key_id)


class TokenNotFoundError(AnonymizationError):
    code = TOKEN_NOT_FOUND

    def __init__(self, token: str, reason: str = "not found") -> None:
        self.token = token
        super().__init__(f"Token '{token}' {reason}", token=token)


class TokenizationFailedError(AnonymizationError):
    code = TOKENIZATION_FAILED


class TechniqueNotApplicableError(AnonymizationError):
    code = TECHNIQUE_NOT_APPLICABLE

    def __init__(self, technique: str, value_type: type, field_name: str | None = None) -> None:
        self.technique = technique
        self.value_type = value_type
        self.field_name = field_name
        target = f"field '{field_name}' of type" if field_name else "type"
        super().__init__(
            f"Technique '{technique}' cannot be applied to {target} '{value_type.__name__}'",
            technique=technique,
            field_name=field_name,
            value_type=value_type.__name__,
        )


class TechniqueNotRegisteredError(AnonymizationError):
    code = TECHNIQUE_NOT_REGISTERED

    def __init__(self, technique: str) -> None:
        self.technique = technique
        super().__init__(
            f"No implementation is registered for technique '{technique}'",
            technique=technique,
        )


class AnonymizationFailedError(AnonymizationError):
    code = ANONYMIZATION_FAILED

    def __init__(self, field_name: str, reason: str) -> None:
        self.field_name = field_name
        super().__init__(
            f"Anonymization of field '{field_name}' failed: {reason}", field_name=field_name
        )


class PseudonymizationFailedError(AnonymizationError):
    code = PSEUDONYMIZATION_FAILED


class DepseudonymizationFailedError(AnonymizationError):
    code = DEPSEUDONYMIZATION_FAILED


class RiskAssessmentFailedError(AnonymizationError):
    code = RISK_ASSESSMENT_FAILED


class StoreError(AnonymizationError):
    """A storage backend failed; ``operation`` names the store call."""

    code = STORE_ERROR

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        super().__init__(f"Store operation '{operation}' failed: {reason}", operation=operation)


class InvalidParameterError(AnonymizationError):
    code = INVALID_PARAMETER

    def __init__(self, parameter: str, reason: str) -> None:
        self.parameter = parameter
        super().__init__(f"Invalid parameter '{parameter}': {reason}", parameter=parameter)
