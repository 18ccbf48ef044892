import base64
import hashlib
import hmac
from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Header, HTTPException

from ledger_hub.config import Provider, settings
from ledger_hub.helpers import canonical_json
from ledger_hub.logging_config import get_logger

logger = get_logger(__name__)

BUDPAY_SIGNATURE_PREFIXES = ("sha512=", "budpay-signature=")


@dataclass
class VerificationResult:
    is_valid: bool
    reason: Optional[str] = None
    warning: Optional[str] = None


def compute_payload_signature(payload: Any, secret: str) -> str:
    """HMAC-SHA256 over the canonical JSON body, hex encoded."""
    message = canonical_json(payload).encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def compute_budpay_signature(secret_key: str, public_key: str) -> str:
    """BudPay signs the merchant public key with the secret key: base64(HMAC-SHA512)."""
    digest = hmac.new(secret_key.encode(), public_key.encode(), hashlib.sha512).digest()
    return base64.b64encode(digest).decode()


def _strip_budpay_prefix(signature: str) -> str:
    cleaned = signature.strip()
    for prefix in BUDPAY_SIGNATURE_PREFIXES:
        if cleaned.lower().startswith(prefix):
            return cleaned[len(prefix):].strip()
    return cleaned


def _missing_material(provider: Provider, what: str) -> VerificationResult:
    if settings.is_production:
        logger.error("Rejecting %s webhook: %s", provider.value, what)
        return VerificationResult(False, reason=what)
    warning = f"{what}; accepted outside production"
    logger.warning("%s webhook: %s", provider.value, warning)
    return VerificationResult(True, warning=warning)


def _compare(provider: Provider, expected: str, provided: str) -> VerificationResult:
    if hmac.compare_digest(expected.encode(), provided.encode()):
        return VerificationResult(True)
    logger.warning("Invalid %s webhook signature", provider.value)
    return VerificationResult(False, reason="Invalid signature")


def _verify_budpay(payload: Any, signature: Optional[str]) -> VerificationResult:
    if not settings.budpay_secret_key or not settings.budpay_public_key:
        return _missing_material(Provider.BUDPAY, "BudPay keys not configured")
    if not signature:
        return _missing_material(Provider.BUDPAY, "No signature provided")
    expected = compute_budpay_signature(settings.budpay_secret_key, settings.budpay_public_key)
    return _compare(Provider.BUDPAY, expected, _strip_budpay_prefix(signature))


def _hmac_verifier(provider: Provider, secret_name: str) -> Callable[[Any, Optional[str]], VerificationResult]:
    def verify(payload: Any, signature: Optional[str]) -> VerificationResult:
        secret = getattr(settings, secret_name)
        if not secret:
            return _missing_material(provider, f"{provider.value} secret key not configured")
        if not signature:
            return _missing_material(provider, "No signature provided")
        return _compare(provider, compute_payload_signature(payload, secret), signature.strip())

    return verify


def _verify_nyra(payload: Any, signature: Optional[str]) -> VerificationResult:
    # Nyra publishes no signing scheme; only the envelope is checked.
    if not isinstance(payload, dict):
        return VerificationResult(False, reason="Invalid payload structure")
    if not payload.get("event") or not payload.get("data"):
        return VerificationResult(False, reason="Missing required fields: event or data")
    return VerificationResult(True, warning=None if signature is None else "Nyra signature ignored: no published scheme")


VERIFIERS: dict[Provider, Callable[[Any, Optional[str]], VerificationResult]] = {
    Provider.BUDPAY: _verify_budpay,
    Provider.SMEPLUG: _hmac_verifier(Provider.SMEPLUG, "smeplug_secret_key"),
    Provider.POLARIS: _hmac_verifier(Provider.POLARIS, "polaris_secret_key"),
    Provider.NYRA: _verify_nyra,
}


def verify_webhook(provider: Provider, payload: Any, signature: Optional[str]) -> VerificationResult:
    verifier = VERIFIERS.get(provider)
    if verifier is None:
        return VerificationResult(False, reason=f"Unsupported provider: {provider}")
    return verifier(payload, signature)


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
