"""
InvoiceSync Webhook Receiver — Inbound Event Intake.

Accepts platform webhooks with:
- HMAC-SHA256 signature verification (hex digest, optional "sha256=" prefix)
- Constant-time comparison
- Parsing into mutation intents by the platform adapter
- Routing through the orchestrator's single-record pull, so webhooks obey
  the same mapping, validation and last-writer-wins rules as scheduled syncs

A request with a bad signature is rejected before anything is parsed or
logged.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any
import hashlib
import hmac
import json
import logging

from sync_core.audit import SyncTrigger
from sync_core.errors import ConfigurationError, IntegrationError, SignatureError, ValidationError
from sync_core.integrations.adapter_base import ConnectionAdapter, MutationIntent
from sync_core.resilience.retry import retry_async

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def sign_payload(payload: bytes | str, secret: str) -> str:
    """HMAC-SHA256 hex digest of the raw payload."""
    return hmac.new(_as_bytes(secret), _as_bytes(payload), hashlib.sha256).hexdigest()


def verify_signature(payload: bytes | str, signature: str | None, secret: str) -> bool:
    """True iff `signature` is the HMAC-SHA256 of `payload` under `secret`."""
    if not signature or not secret:
        return False
    signature = signature.strip()
    if signature.lower().startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX):]
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, signature.lower())


@dataclass
class WebhookResult:
    """Outcome of one accepted webhook delivery."""
    platform: str
    intents: int = 0
    applied: int = 0
    failed: int = 0
    skipped: list[dict[str, Any]] = field(default_factory=list)
    log_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "intents": self.intents,
            "applied": self.applied,
            "failed": self.failed,
            "skipped": self.skipped,
            "log_ids": self.log_ids,
        }


class WebhookReceiver:
    """Verifies and dispatches webhooks for one integration."""

    def __init__(self, adapter: ConnectionAdapter, orchestrator, secret: str | None = None):
        self.adapter = adapter
        self.orchestrator = orchestrator
        self.secret = secret if secret is not None else adapter.config.webhook_secret

    @property
    def signature_header(self) -> str:
        return self.adapter.webhook_signature_header

    def verify(self, payload: bytes, signature: str | None) -> None:
        if not self.secret:
            raise ConfigurationError(
                f"No webhook secret configured for {self.adapter.platform}",
                platform=self.adapter.platform,
            )
        if not verify_signature(payload, signature, self.secret):
            logger.warning("[%s] Webhook rejected: invalid signature", self.adapter.platform)
            raise SignatureError("Invalid webhook signature", platform=self.adapter.platform)

    async def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify, parse and apply one delivery.

        Raises SignatureError on mismatch and IntegrationError when an event
        could not be applied at all (the platform should redeliver).
        """
        self.verify(payload, signature)

        try:
            body = json.loads(payload or b"null")
        except ValueError as exc:
            raise ValidationError(
                f"Webhook body is not valid JSON: {exc}", platform=self.adapter.platform
            ) from exc

        intents = self.adapter.receive_webhook(body)
        result = WebhookResult(platform=self.adapter.platform, intents=len(intents))
        logger.info("[%s] Webhook accepted with %d intent(s)", self.adapter.platform, len(intents))

        for intent in intents:
            await self._apply(intent, result)
        return result

    async def _apply(self, intent: MutationIntent, result: WebhookResult) -> None:
        if intent.action == "delete":
            # Remote deletions are not propagated to local data
            result.skipped.append({"external_id": intent.external_id, "reason": "delete not applied"})
            return

        record = intent.record
        if record is None:
            if not intent.external_id:
                result.skipped.append({"external_id": None, "reason": "intent without record or id"})
                return
            record = await retry_async(
                lambda: self.adapter.fetch_entity(intent.entity_type, intent.external_id),
                self.adapter.config.retry_policy,
            )
            if record is None:
                result.skipped.append({"external_id": intent.external_id, "reason": "not found remotely"})
                return

        sync = await self.orchestrator.ingest_record(intent.entity_type, record, SyncTrigger.WEBHOOK)
        result.log_ids.append(sync.log_id)
        if sync.error_message and not sync.cancelled:
            raise IntegrationError(
                f"{intent.entity_type.value} webhook event not applied: {sync.error_message}",
                platform=self.adapter.platform,
            )
        result.applied += sync.succeeded
        result.failed += sync.failed
