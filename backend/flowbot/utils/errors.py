# /flowbot/utils/errors.py

from typing import Any, Dict, Optional

# Error taxonomy shared by the ingress routes, the executor and the
# collaborator services. Each error carries the HTTP status it maps to
# (where it reaches a response) and a stable `kind` string that is written
# to sessions and audit entries.


class FlowbotError(Exception):
    status_code: int = 500
    kind: str = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body


class LookupFailure(FlowbotError):
    """Flow, node or webhook id did not resolve."""
    status_code = 404
    kind = "lookup_failure"


class WebhookInactive(FlowbotError):
    status_code = 403
    kind = "webhook_inactive"


class AuthFailure(FlowbotError):
    """Missing or wrong shared secret."""
    status_code = 401
    kind = "auth_failure"


class MethodNotAllowed(FlowbotError):
    status_code = 405
    kind = "method_not_allowed"


class MalformedPayload(FlowbotError):
    status_code = 400
    kind = "malformed_payload"


class ConfigError(FlowbotError):
    """Missing credentials or malformed node configuration."""
    kind = "config_error"


class ProviderError(FlowbotError):
    """An upstream collaborator answered with a failure."""
    status_code = 502
    kind = "provider_error"


class UpstreamTimeoutError(FlowbotError):
    status_code = 504
    kind = "timeout"


class FlowDefinitionError(FlowbotError):
    """Unknown node type or dangling edge. Never retried."""
    kind = "flow_definition_error"


class HopLimitExceeded(FlowbotError):
    kind = "hop_limit_exceeded"
