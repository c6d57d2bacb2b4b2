"""Outbound notifications: signed webhooks to customer endpoints."""
from notifications.webhooks import WebhookDispatcher, build_payload, sign_payload, verify_signature

__all__ = ["WebhookDispatcher", "build_payload", "sign_payload", "verify_signature"]
