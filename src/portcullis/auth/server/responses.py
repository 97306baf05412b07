"""HTTP rendering of gateway errors."""

from __future__ import annotations

from starlette.responses import JSONResponse

from portcullis.auth.models.errors import AuthenticationError, GatewayError


def unauthorized_response() -> JSONResponse:
    """The single 401 body used for every authentication failure."""
    return JSONResponse(
        {"error": "unauthorized"},
        status_code=401,
        headers={"WWW-Authenticate": "Bearer"},
    )


def error_response(error: GatewayError) -> JSONResponse:
    if isinstance(error, AuthenticationError):
        return unauthorized_response()

    headers = {}
    if error.status_code == 403:
        headers["WWW-Authenticate"] = f'Bearer error="{error.error_code}"'
    elif error.error_code == "invalid_request":
        headers["WWW-Authenticate"] = 'Bearer error="invalid_request"'

    body = {"error": error.error_code}
    if error.description:
        body["error_description"] = error.description
    return JSONResponse(body, status_code=error.status_code, headers=headers)
