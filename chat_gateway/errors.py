"""Error taxonomy shared by the pool, translator and orchestrator."""

from typing import Dict, Optional


# Error type reported in JSON bodies, keyed by HTTP status
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    500: "api_error",
    502: "upstream_error",
    503: "api_error",
    504: "api_error",
}


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def error_type(self) -> str:
        return ERROR_TYPE_MAP.get(self.status_code, "api_error")

    def to_dict(self) -> Dict[str, object]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.status_code,
            }
        }


class ValidationError(GatewayError):
    """Malformed inbound request or a payload that failed the structural check."""

    status_code = 400


class AuthenticationError(GatewayError):
    """Missing or invalid caller credential."""

    status_code = 401


class CredentialUnavailableError(GatewayError):
    """No credential in the pool holds any bearer token."""

    status_code = 401


class UpstreamError(GatewayError):
    """Non-2xx answer or transport failure while talking to the upstream."""

    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body[:500]

    def to_dict(self) -> Dict[str, object]:
        error: Dict[str, object] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.status_code,
        }
        if self.upstream_status is not None:
            error["upstream_status"] = self.upstream_status
        if self.body:
            error["details"] = self.body
        return {"error": error}


class StreamCorruptionError(GatewayError):
    """Stream buffer overflow; corrected in place and never surfaced."""


class TokenExpiredError(GatewayError):
    """Bearer token is past its structural expiry and must be renewed."""

    status_code = 401
