"""Request-level failures of the Micropub auth flow and endpoints.

Every error carries the HTTP status and the OAuth / Micropub ``error`` code
the server answers with; see ``server._on_micropub_error``.
"""


class MicropubError(Exception):
    status_code = 400
    error = "invalid_request"
    description = "Invalid request"

    def __init__(self, description: str | None = None):
        super().__init__(description or self.description)
        if description:
            self.description = description

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(MicropubError):
    description = "Missing or malformed request parameters"


class InvalidClient(MicropubError):
    error = "invalid_client"
    description = "client_id must be a URL with a host"


class UnknownClient(MicropubError):
    error = "invalid_client"
    description = "No authorization request was made by this client"

    def __init__(self, key: str):
        super().__init__(f"No authorization record for client '{key}'")
        self.key = key


class InvalidAuthCode(MicropubError):
    error = "invalid_grant"
    description = "Authorization code does not match"


class AuthenticationFailed(MicropubError):
    status_code = 401
    error = "unauthorized"
    description = "Valid Bearer token required"


class UnsupportedHProperty(MicropubError):
    description = "Only h=entry is supported"

    def __init__(self, h: str | None = None):
        super().__init__(f"Unsupported h value '{h}', only 'entry' is accepted" if h else None)
        self.h = h
