"""Signature workflow errors. Routers translate these into HTTP responses."""


class SignatureError(Exception):
    """Base class for workflow failures that carry a user-facing message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SignatureError):
    """Request, signer or token does not exist."""


class InvalidStateError(SignatureError):
    """Operation not allowed in the current request or signer state."""


class PreconditionError(SignatureError):
    """Caller input rejected before any state was persisted."""


class ArtifactError(SignatureError):
    """Signed document cannot be produced for this request."""
