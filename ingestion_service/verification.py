"""
Webhook signature verification, one verifier per provider.

- Signatures are computed over the raw request bytes; the body is decoded
  only after it has been authenticated.
- HMAC comparisons use hmac.compare_digest (constant time).
- No configured secret -> MissingSecret (fail closed).
- Provider A timestamps outside the tolerance are rejected (replay window).
- Provider B signs a detached JWS (RS256, b64=false) that is checked against
  the provider's PEM public key or X.509 certificate.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import jwt
from cryptography import x509
from jwt.api_jws import PyJWS

from ingestion_service.domain import Provider, VerifiedEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_TOLERANCE = 300

_jws = PyJWS()


class VerificationError(Exception):
    """Base class for signature failures"""
    reason = "verification_failed"


class BadSignature(VerificationError):
    reason = "bad_signature"


class MissingSecret(VerificationError):
    reason = "missing_secret"


class Malformed(VerificationError):
    reason = "malformed"


class MalformedPayload(Malformed):
    """The body cannot be read as an event"""
    reason = "malformed_payload"


def _parse_provider_a_header(header: str) -> Dict[str, list]:
    # t=<timestamp>,v1=<sig>[,v1=<sig>...]
    parts: Dict[str, list] = {}
    for item in header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2 or not kv[0] or not kv[1]:
            raise Malformed(f"invalid signature header segment: {item!r}")
        parts.setdefault(kv[0], []).append(kv[1])
    return parts


def _decode_body(provider: Provider, raw_body: bytes, id_field: str, type_field: str) -> VerifiedEvent:
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise MalformedPayload("body is not a JSON object")

    event_id = payload.get(id_field)
    if not event_id or not isinstance(event_id, str):
        raise MalformedPayload(f"missing {id_field}")

    return VerifiedEvent(
        provider=provider,
        event_id=event_id,
        event_type=str(payload.get(type_field) or ""),
        payload=payload,
    )


def verify_provider_a(
    raw_body: bytes,
    header_signature: Optional[str],
    secret: Optional[str],
    tolerance: int = DEFAULT_TIMESTAMP_TOLERANCE,
    now: Optional[float] = None,
) -> VerifiedEvent:
    """Verify a provider A delivery (timestamped HMAC-SHA256, hex digest).

    Signed payload is ``"<t>." + raw_body``. Several ``v1`` values may be
    present while the provider rotates secrets; any match is accepted.
    """
    if not secret:
        raise MissingSecret("provider A webhook secret is not configured")
    if not header_signature:
        raise Malformed("missing signature header")

    parts = _parse_provider_a_header(header_signature)
    timestamps = parts.get("t")
    signatures = parts.get("v1")
    if not timestamps or len(timestamps) != 1 or not signatures:
        raise Malformed("signature header needs one t and at least one v1")

    try:
        timestamp = int(timestamps[0])
    except ValueError:
        raise Malformed(f"non-numeric timestamp: {timestamps[0]!r}")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        logger.warning(f"Provider A webhook timestamp outside tolerance: {timestamp}")
        raise BadSignature("timestamp outside tolerance")

    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise BadSignature("signature mismatch")

    return _decode_body(Provider.PROVIDER_A, raw_body, "id", "type")


def _load_verification_key(pem: str) -> Any:
    if "BEGIN CERTIFICATE" in pem:
        try:
            return x509.load_pem_x509_certificate(pem.encode("utf-8")).public_key()
        except ValueError as e:
            raise MissingSecret(f"provider B certificate cannot be loaded: {e}")
    return pem


def verify_provider_b(
    raw_body: bytes,
    header_signature: Optional[str],
    secret: Optional[str],
) -> VerifiedEvent:
    """Verify a provider B delivery (detached JWS, RS256, unencoded payload)."""
    if not secret:
        raise MissingSecret("provider B verification key is not configured")
    if not header_signature:
        raise Malformed("missing signature header")

    segments = header_signature.strip().split(".")
    if len(segments) != 3 or segments[1] != "":
        raise Malformed("signature must be a detached compact JWS")

    key = _load_verification_key(secret)
    try:
        decoded = _jws.decode_complete(
            header_signature.strip(),
            key=key,
            algorithms=["RS256"],
            detached_payload=raw_body,
        )
    except jwt.InvalidSignatureError:
        raise BadSignature("signature mismatch")
    except jwt.InvalidKeyError as e:
        raise MissingSecret(f"provider B verification key is unusable: {e}")
    except jwt.InvalidAlgorithmError as e:
        raise BadSignature(f"algorithm not allowed: {e}")
    except jwt.DecodeError as e:
        raise Malformed(f"undecodable JWS: {e}")
    except ValueError as e:
        # PEM loading errors surface from cryptography as ValueError
        raise MissingSecret(f"provider B verification key is unusable: {e}")

    # A b64=true JWS with an empty payload segment signs nothing of the body
    if decoded["header"].get("b64") is not False:
        raise Malformed("JWS must declare an unencoded (b64=false) payload")

    return _decode_body(Provider.PROVIDER_B, raw_body, "event_id", "event_type")



def verify(
    provider: Provider,
    raw_body: bytes,
    header_signature: Optional[str],
    secret: Optional[str],
    **options: Any,
) -> VerifiedEvent:
    """Uniform entry point over the per-provider verifiers."""
    if provider is Provider.PROVIDER_A:
        return verify_provider_a(raw_body, header_signature, secret, **options)
    return verify_provider_b(raw_body, header_signature, secret)
