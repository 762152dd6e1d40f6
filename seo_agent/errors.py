from typing import Any, Optional


class AgentError(Exception):
    kind = "agent_error"

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "error": self.message}
        if self.detail:
            payload["detail"] = dict(self.detail)
        return payload


class NetworkError(AgentError):
    """Transport failure or transport timeout talking to a model backend."""

    kind = "network"


class ProtocolError(AgentError):
    """Backend output that can never become a valid record."""

    kind = "protocol"


class ProviderError(AgentError):
    kind = "provider"

    def __init__(self, message: str = "", status_code: Optional[int] = None, detail: Any = None) -> None:
        super().__init__(message, status_code=status_code, detail=detail)
        self.status_code = status_code


class StepTimeoutError(AgentError, TimeoutError):
    kind = "timeout"


class ToolValidationError(AgentError):
    kind = "tool_validation"


class ToolExecutionError(AgentError):
    kind = "tool_execution"


class ProviderUnsupportedFeatureError(AgentError):
    kind = "unsupported"
