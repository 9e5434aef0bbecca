from http import HTTPStatus
from typing import Optional


class GatewayError(Exception):
    """Base error for everything the gateway reports to API callers."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_type = "server_error"
    # Recoverable errors are retried by rotating the credential.
    recoverable = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = str(message)
        if status_code is not None:
            self.status_code = int(status_code)


class AuthExhaustion(GatewayError):
    error_type = "credential_exhausted"


class NoCredentialAvailable(AuthExhaustion):
    """No usable credential could be selected for the model."""


class CredentialsExhausted(AuthExhaustion):
    """Every credential tried for the model was rejected or ran out of quota."""


class RateLimited(GatewayError):
    status_code = HTTPStatus.TOO_MANY_REQUESTS
    error_type = "rate_limit_error"
    recoverable = True


class UpstreamTransportFailure(GatewayError):
    status_code = HTTPStatus.BAD_GATEWAY
    error_type = "upstream_error"
    recoverable = True

    def __init__(self, message: str, *, upstream_status: int = 0):
        super().__init__(message)
        self.upstream_status = int(upstream_status or 0)


class UpstreamProtocolError(GatewayError):
    status_code = HTTPStatus.BAD_GATEWAY
    error_type = "upstream_protocol_error"
    recoverable = True


class CollaboratorTimeout(GatewayError):
    status_code = HTTPStatus.GATEWAY_TIMEOUT
    error_type = "collaborator_timeout"


class ConfigurationError(GatewayError):
    error_type = "configuration_error"


class InvalidRequestError(GatewayError):
    status_code = HTTPStatus.BAD_REQUEST
    error_type = "invalid_request_error"


def openai_error_payload(message: str, type: str, code: object) -> dict:  # noqa: A002
    return {"error": {"message": str(message), "type": str(type), "code": code}}


def error_payload_for(exc: GatewayError) -> dict:
    return openai_error_payload(exc.message, exc.error_type, int(exc.status_code))
