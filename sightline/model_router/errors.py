"""Inference failure taxonomy.

These never cross the ``InferenceClient.submit`` boundary; the client turns
them into ``InferenceResult(success=False, error=str(exc))``.
"""


class InferenceError(Exception):
    """Base class for a failed inference call."""
    reason = "inference_error"


class TransportError(InferenceError):
    """Network failure, timeout, or non-success HTTP status."""
    reason = "transport_error"


class ParseError(InferenceError):
    """Provider envelope or model text held no recoverable result."""
    reason = "parse_error"
