"""
Error taxonomy for the execution pipeline.

Configuration and validation errors are raised at the edges and turned into
structured results by the public surface. Guardrail rejections are values,
not exceptions (see core.guardrails.GuardrailResult).
"""


class AgentSafeError(Exception):
    """Base class. Carries a stable reason code next to the message."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ConfigurationError(AgentSafeError):
    """Missing signer key, disabled feature, malformed allowlist address."""
    pass


class ValidationError(AgentSafeError):
    """Malformed principal/account identifier, unresolvable token, bad request field."""
    pass


class UpstreamError(AgentSafeError):
    """Quote fetch failure, RPC timeout, relay rejection."""

    def __init__(self, code: str, message: str = "", retryable: bool = False):
        super().__init__(code, message)
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}
