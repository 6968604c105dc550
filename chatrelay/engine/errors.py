"""Exception hierarchy for the relay engine.

One exception per failure mode. Each carries a stable ``code`` that
travels to clients inside terminal stream fragments.
"""
from __future__ import annotations


class ChatRelayError(Exception):
    """Base exception for all relay errors."""
    code = "relay_error"


class BackendUnavailableError(ChatRelayError):
    """Backend executable or endpoint is missing or unreachable."""
    code = "backend_unavailable"

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' is not available: {reason}")


class ProcessFailureError(ChatRelayError):
    """External engine exited with a nonzero status."""
    code = "process_failure"

    def __init__(self, backend: str, returncode: int | None, stderr: str = ""):
        self.backend = backend
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        if returncode is None:
            msg = f"{backend} reported an error"
        else:
            msg = f"{backend} exited with code {returncode}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ProtocolError(ChatRelayError):
    """Engine output could not be understood."""
    code = "protocol_error"

    def __init__(self, backend: str, reason: str, line: str | None = None):
        self.backend = backend
        self.reason = reason
        self.line = line
        super().__init__(f"{backend} protocol error: {reason}")


class BackendTimeoutError(ChatRelayError):
    """Probe or stream read exceeded its time budget."""
    code = "timeout"

    def __init__(self, backend: str, timeout_seconds: float):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{backend} produced no output for {timeout_seconds}s"
        )


class GenerationCancelledError(ChatRelayError):
    """Generation was stopped on request."""
    code = "cancelled"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__("Generation cancelled")


class DuplicateRequestError(ChatRelayError):
    """A generation for this conversation is already in flight."""
    code = "duplicate_request"

    def __init__(self, conversation_id: str, backend: str | None = None):
        self.conversation_id = conversation_id
        self.backend = backend
        owner = f" on {backend}" if backend else ""
        super().__init__(
            f"Conversation {conversation_id} is already generating{owner}"
        )


class RecoveryFailedError(ChatRelayError):
    """Captured output could not be turned into a message."""
    code = "recovery_failed"

    def __init__(self, conversation_id: str, reason: str):
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(
            f"Recovery failed for conversation {conversation_id}: {reason}"
        )


class ConversationNotFoundError(ChatRelayError):
    """No log exists for the requested conversation id."""
    code = "not_found"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
