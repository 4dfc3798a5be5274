"""
micropub_models.py — request and response shapes for the Micropub server.

Incoming bodies arrive either as JSON or as form data; both are folded into
plain dicts first and then validated by the pydantic models below.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from micropub_errors import InvalidRequest

TOKEN_FORM_BOUNDARY = "MicropubAuthTokenOutput"


def _reject_line_breaks(v: str | None) -> str | None:
    # Values end up inside multipart token responses.
    if v is not None and ("\r" in v or "\n" in v):
        raise ValueError("must not contain line breaks")
    return v


class AuthRequest(BaseModel):
    """Parameters of the /auth and /token steps."""

    client_id: str | None = None
    redirect_uri: str | None = None
    me: str | None = None
    scope: str | None = None
    code: str | None = None
    state: str | None = None

    @field_validator("state", mode="before")
    @classmethod
    def _state_to_str(cls, v: Any) -> Any:
        # Some clients send a numeric state.
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("me", "scope")
    @classmethod
    def _single_line(cls, v: str | None) -> str | None:
        return _reject_line_breaks(v)


class ResponseEncoding(Enum):
    JSON = "json"
    FORM_DATA = "form-data"

    @classmethod
    def for_content_type(cls, content_type: str | None) -> "ResponseEncoding":
        if content_type and "json" in content_type.lower():
            return cls.JSON
        return cls.FORM_DATA


class TokenOutput(BaseModel):
    access_token: str
    scope: str | None = None
    me: str

    @field_validator("me", "scope")
    @classmethod
    def _single_line(cls, v: str | None) -> str | None:
        return _reject_line_breaks(v)

    def encode(self, encoding: ResponseEncoding) -> tuple[bytes, str]:
        """Return (body, media type) for the negotiated encoding."""
        if encoding is ResponseEncoding.JSON:
            return self.model_dump_json().encode(), "application/json"
        return self._form_data(), f"multipart/form-data; boundary={TOKEN_FORM_BOUNDARY}"

    def _form_data(self) -> bytes:
        fields = [("access_token", self.access_token), ("me", self.me)]
        if self.scope is not None:
            fields.append(("scope", self.scope))
        parts = []
        for name, value in fields:
            parts.append(
                f"--{TOKEN_FORM_BOUNDARY}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n'
                f"\r\n"
                f"{value}\r\n"
            )
        parts.append(f"--{TOKEN_FORM_BOUNDARY}--\r\n")
        return "".join(parts).encode()


class MicropubEntry(BaseModel):
    h: str
    content: str
    name: str | None = None
    photo: str | None = None
    category: list[str] | None = None
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("category", mode="before")
    @classmethod
    def _category_to_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @classmethod
    def from_fields(cls, fields: dict[str, Any]) -> "MicropubEntry":
        try:
            return cls.model_validate(fields)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid entry: {_summarize(e)}") from e


def _summarize(e: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
        for err in e.errors()
    )


def parse_auth_request(fields: dict[str, Any]) -> AuthRequest:
    try:
        return AuthRequest.model_validate(fields)
    except ValidationError as e:
        raise InvalidRequest(_summarize(e)) from e


# ---------------------------------------------------------------------------
# Body folding
# ---------------------------------------------------------------------------

def fold_form_items(items: list[tuple[str, Any]]) -> dict[str, Any]:
    """Collapse form items; keys ending in ``[]`` accumulate into lists."""
    fields: dict[str, Any] = {}
    for key, value in items:
        if key.endswith("[]"):
            fields.setdefault(key[:-2], []).append(value)
        else:
            fields[key] = value
    return fields


def _mf2_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "html" in value:
            return value["html"]
        return value.get("value")
    return value


def flatten_mf2(data: dict[str, Any]) -> dict[str, Any]:
    """Turn ``{"type": ["h-entry"], "properties": {...}}`` into flat fields.

    Plain JSON bodies (``{"h": "entry", ...}``) pass through untouched.
    """
    if "properties" not in data or "type" not in data:
        return data
    types = data.get("type") or []
    properties = data.get("properties") or {}
    if not isinstance(properties, dict):
        raise InvalidRequest("properties must be an object")
    fields: dict[str, Any] = {}
    if types:
        kind = types[0] if isinstance(types, list) else types
        if not isinstance(kind, str):
            raise InvalidRequest("type must be a list of strings")
        fields["h"] = kind[2:] if kind.startswith("h-") else kind
    for key, values in properties.items():
        if not isinstance(values, list):
            values = [values]
        if key == "category":
            fields[key] = [_mf2_value(v) for v in values]
        elif values:
            fields[key] = _mf2_value(values[0])
    return fields
