"""Request/response bodies of the unseal service."""
import base64
import binascii
from collections.abc import Mapping
from typing import Any

from ..crypto.engine import Envelope
from ..data import ScopeClaim, SealingScope


def unseal_request(envelope: Envelope, claim: ScopeClaim) -> dict:
    return {
        "envelope": envelope.to_text(),
        "namespace": claim.namespace,
        "name": claim.name,
        "scope": SealingScope(claim.scope).value,
    }


def parse_unseal_request(body: Any) -> tuple[Envelope, ScopeClaim]:
    """Validate an unseal request body.

    Raises:
        ValueError: If a field is missing or has the wrong type.
        TamperedError: If the envelope cannot be parsed.
    """
    if not isinstance(body, Mapping):
        raise ValueError("Request body must be a JSON object")
    for field in ("envelope", "namespace", "name"):
        if not isinstance(body.get(field), str):
            raise ValueError(f"Field {field!r} must be a string")
    try:
        scope = SealingScope(body.get("scope", SealingScope.STRICT.value))
    except ValueError:
        raise ValueError(f"Unknown scope {body.get('scope')!r}") from None
    claim = ScopeClaim(body["namespace"], body["name"], scope)
    return Envelope.from_text(body["envelope"]), claim


def encode_plaintext(plaintext: bytes) -> dict:
    return {"plaintext": base64.b64encode(plaintext).decode("ascii")}


def decode_plaintext(body: Mapping) -> bytes:
    try:
        return base64.b64decode(body["plaintext"], validate=True)
    except (KeyError, TypeError, binascii.Error) as err:
        raise ValueError(f"Malformed unseal response: {err}") from err


def error_body(category: str, message: str) -> dict:
    return {"error": category, "message": message}
