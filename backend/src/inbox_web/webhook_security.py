from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def _header(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    return value


def verify_subscription_challenge(
    *,
    settings: Settings,
    mode: str | None,
    verify_token: str | None,
    challenge: str | None,
) -> str | None:
    """Return the challenge to echo back, or None when the handshake must be rejected."""
    configured = settings.whatsapp_verify_token.strip()
    if not configured or mode != "subscribe" or challenge is None:
        return None
    if verify_token is None or not hmac.compare_digest(configured, verify_token.strip()):
        return None
    return challenge


def verify_whatsapp_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    mode = settings.whatsapp_webhook_signature_mode
    if mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.whatsapp_app_secret.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")

    provided = _normalize_signature(_header(headers, "X-Hub-Signature-256"))
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(provided, expected):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
