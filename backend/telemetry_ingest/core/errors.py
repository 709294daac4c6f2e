"""
Error taxonomy for the ingestion engine

Errors are raised as typed exceptions internally and rendered to the legacy
plain-string contract only at the post/bulk boundary.
"""
import enum


class ErrorKind(str, enum.Enum):
    FORMAT = "format"
    VALIDATION = "validation"
    PROVISIONING = "provisioning"
    FORWARDING = "forwarding"


class IngestError(Exception):
    """Base error; str() gives the message shown to the device"""
    kind: ErrorKind = ErrorKind.FORMAT
    
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
    
    def __str__(self) -> str:
        return self.message


class FormatError(IngestError):
    """Malformed payload syntax, fatal to the whole request"""
    kind = ErrorKind.FORMAT


class ValidationError(IngestError):
    """Node or access rejected, fatal, nothing persisted"""
    kind = ErrorKind.VALIDATION


class ProvisioningError(IngestError):
    """Device bookkeeping failure, logged and ignored"""
    kind = ErrorKind.PROVISIONING


class ForwardingError(IngestError):
    """Process engine failure, logged and ignored"""
    kind = ErrorKind.FORWARDING
