from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Optional, Type, Union

from pydantic import ValidationError

from ledger_hub.config import Provider
from ledger_hub.contracts.providers import BudPayPayload, NyraPayload, PolarisPayload, SmePlugPayload
from ledger_hub.errors import ErrorKind, Rejection
from ledger_hub.schemas.app_schemas import WebhookEvent


@dataclass(frozen=True)
class ProviderDecoder:
    contract: Type[Any]
    # Dotted paths into the raw payload hashed into the content fingerprint.
    identifier_paths: tuple[str, ...]


DECODERS: dict[Provider, ProviderDecoder] = {
    Provider.BUDPAY: ProviderDecoder(
        contract=BudPayPayload,
        identifier_paths=(
            "data.amount",
            "data.craccount",
            "data.customer.email",
            "data.sessionid",
            "data.originatoraccountnumber",
        ),
    ),
    Provider.SMEPLUG: ProviderDecoder(
        contract=SmePlugPayload,
        identifier_paths=("data.amount", "data.account_number", "data.transaction_id"),
    ),
    Provider.POLARIS: ProviderDecoder(
        contract=PolarisPayload,
        identifier_paths=("data.amount", "data.account_number"),
    ),
    Provider.NYRA: ProviderDecoder(
        contract=NyraPayload,
        identifier_paths=(
            "data.amount",
            "data.account_number",
            "data.wallet_id",
            "data.data.amount",
            "data.data.account_number",
            "data.data.wallet_id",
        ),
    ),
}


def resolve_provider(name: str) -> Optional[Provider]:
    try:
        provider = Provider(name.strip().upper())
    except ValueError:
        return None
    return provider if provider in DECODERS else None


def _dig(payload: Any, path: str) -> Any:
    current = payload
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def payload_identifiers(event: WebhookEvent) -> dict[str, Any]:
    decoder = DECODERS[event.provider]
    return {path: _dig(event.raw_payload, path) for path in decoder.identifier_paths}


def normalize(
    provider: Provider,
    payload: Any,
    received_at: Optional[datetime] = None,
) -> Union[WebhookEvent, Rejection]:
    """
    Decode a raw provider payload into a WebhookEvent.

    No I/O. Besides the payload it reads ``received_at``, used when the
    provider omits a timestamp, and ``settings.default_currency`` for payloads
    without a currency. Structural problems come back as a TRANSPORT rejection.
    """
    decoder = DECODERS.get(provider)
    if decoder is None:
        return Rejection(ErrorKind.TRANSPORT, f"Unsupported provider: {provider}", "unsupported provider")
    if not isinstance(payload, dict):
        return Rejection(ErrorKind.TRANSPORT, "Invalid webhook payload structure", "payload must be a JSON object")
    if not isinstance(payload.get("data"), dict):
        return Rejection(ErrorKind.TRANSPORT, "Invalid webhook payload structure", "missing data object")

    received_at = received_at or datetime.now(UTC)
    try:
        contract = decoder.contract.model_validate(payload)
        event = contract.to_event(payload, received_at)
    except ValidationError as exc:
        return Rejection(
            ErrorKind.TRANSPORT,
            "Invalid webhook payload structure",
            f"{provider.value} payload failed validation: {exc.error_count()} error(s)",
            {"errors": exc.errors(include_url=False, include_input=False)},
        )
    except ValueError as exc:
        return Rejection(ErrorKind.TRANSPORT, "Invalid webhook payload structure", str(exc))

    if not event.transaction_reference:
        return Rejection(ErrorKind.TRANSPORT, "Invalid webhook payload structure", "missing transaction reference")
    return event
