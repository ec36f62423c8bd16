"""
Error taxonomy shared by the agent services and the HTTP layer.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for errors raised by the agent services."""
    status_code = 500
    public_message = 'Query processing failed'

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message


class ValidationError(AgentError):
    """Invalid caller input, such as an empty query or an unknown provider."""
    status_code = 400
    public_message = 'Invalid request'


class AuthorizationError(AgentError):
    """The caller is not authenticated."""
    status_code = 401
    public_message = 'User authentication required'


class ForbiddenError(AuthorizationError):
    """The caller is authenticated but lacks the required role."""
    status_code = 403
    public_message = 'Insufficient permissions'


class NotFoundError(AgentError):
    """A referenced resource does not exist or is not visible to the caller."""
    status_code = 404
    public_message = 'Not found'


class UpstreamError(AgentError):
    """A backend (model server, vector index, embeddings) failed.

    The message is generic on purpose; the underlying error is logged where it
    is caught and kept in ``__cause__``.
    """
    status_code = 500
    public_message = 'Query processing failed'


class SyncError(UpstreamError):
    """Synchronization of an entity type failed after all retries."""
    public_message = 'Synchronization failed'


class InitializationError(AgentError):
    """A service was used before it was ready or after shutdown began."""
    status_code = 500
    public_message = 'AI Agent is not initialized'
