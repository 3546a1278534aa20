"""
Flow interpreter exceptions.

Authoring problems (a missing edge, an unknown variable) are not exceptions:
the walker halts that branch. Exceptions are reserved for things that must
abort the current step: broken definitions, failed external calls, and
persistence failures.
"""
from __future__ import annotations


class FlowError(Exception):
    """Base exception for the flow interpreter."""

    def __init__(self, message: str, session_id: str = "", node_id: str = ""):
        self.session_id = session_id
        self.node_id = node_id
        super().__init__(message)


class FlowDefinitionError(FlowError):
    """A stored flow failed validation (unknown node type, malformed payload)."""

    def __init__(self, message: str, flow_id: str = ""):
        self.flow_id = flow_id
        super().__init__(message)


class NodeConfigurationError(FlowError):
    """A node is missing configuration it cannot run without."""


class ExternalCallError(FlowError):
    """An HTTP or language-model call made by a node failed."""

    def __init__(self, message: str, session_id: str = "", node_id: str = "",
                 status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, session_id, node_id)


class FlowLoopError(FlowError):
    """A single walk executed more nodes than allowed."""


class SessionNotFoundError(FlowError):
    """A session id did not resolve to a stored session."""


class PersistenceError(FlowError):
    """The store could not read or write flow state."""


class SendError(FlowError):
    """An outbound message could not be queued."""
