# Overview: Payment gateway adapters (PortOne REST API and a local mock).

"""
Payment Gateway Adapters

Both adapters return payments in the same normalized shape that
payment_service.reconcile_payment consumes:

    {
        "imp_uid", "merchant_uid", "status", "amount", "pay_method",
        "pg_provider", "pg_tid", "receipt_url", "paid_at", "failed_reason",
    }

status uses the gateway vocabulary: ready / paid / failed / cancelled.
amount is an integer in the order currency's minor unit.
"""

from __future__ import annotations

import secrets

import httpx
from flask import current_app


GATEWAY_PAYMENT_FIELDS = (
    "imp_uid",
    "merchant_uid",
    "status",
    "amount",
    "pay_method",
    "pg_provider",
    "pg_tid",
    "receipt_url",
    "paid_at",
    "failed_reason",
)


class GatewayError(Exception):
    """Raised when the payment gateway cannot be reached or rejects a call."""
    pass


def normalize_notification(data: dict) -> dict:
    """Keep only the known fields; PortOne calls the failure field fail_reason."""
    normalized = {field: data.get(field) for field in GATEWAY_PAYMENT_FIELDS}
    if normalized["failed_reason"] is None and data.get("fail_reason"):
        normalized["failed_reason"] = data["fail_reason"]
    return normalized


class PortOneGateway:
    """
    PortOne (iamport) v1 REST client.

    Every call exchanges the API key/secret for a short-lived access token
    first; tokens are not cached across requests.
    """

    def __init__(self, base_url: str, api_key: str, api_secret: str, timeout: float = 10.0):
        if not api_key or not api_secret:
            raise GatewayError("PortOne API credentials are not configured")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _unwrap(self, response: httpx.Response, action: str) -> dict:
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(f"{action}: gateway returned non-JSON response ({response.status_code})")

        if response.status_code >= 400 or body.get("code") != 0:
            raise GatewayError(f"{action}: {body.get('message') or response.status_code}")
        return body.get("response") or {}

    def _access_token(self) -> str:
        try:
            response = self.client.post(
                "/users/getToken",
                json={"imp_key": self.api_key, "imp_secret": self.api_secret},
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"token request failed: {e}")

        token = self._unwrap(response, "token request").get("access_token")
        if not token:
            raise GatewayError("token request: no access token in response")
        return token

    def _headers(self) -> dict:
        return {"Authorization": self._access_token(), "Content-Type": "application/json"}

    def fetch_payment(self, imp_uid: str, reported: dict | None = None) -> dict:
        """Authoritative payment record; the client-reported values are ignored."""
        try:
            response = self.client.get(f"/payments/{imp_uid}", headers=self._headers())
        except httpx.HTTPError as e:
            raise GatewayError(f"payment lookup failed: {e}")
        return normalize_notification(self._unwrap(response, "payment lookup"))

    def cancel_payment(self, imp_uid: str, amount: int, reason: str | None = None,
                       checksum: int | None = None) -> dict:
        """
        Partial or full cancel. checksum is the amount still refundable before
        this call; PortOne rejects the cancel when it no longer matches, so a
        repeated request cannot return the money twice.
        """
        body = {"imp_uid": imp_uid, "amount": amount, "reason": reason or ""}
        if checksum is not None:
            body["checksum"] = checksum
        try:
            response = self.client.post("/payments/cancel", headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise GatewayError(f"payment cancel failed: {e}")

        data = self._unwrap(response, "payment cancel")
        history = data.get("cancel_history") or []
        refund_id = (history[-1].get("pg_tid") if history else None) or f"{imp_uid}-cancel"
        return {
            "refund_id": refund_id,
            "amount": amount,
            "cancel_amount": data.get("cancel_amount"),
            "receipt_url": (data.get("cancel_receipt_urls") or [None])[-1],
        }


class MockGateway:
    """
    Development gateway: echoes what the client reports and fabricates refund
    ids. Never use with real money.
    """

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def fetch_payment(self, imp_uid: str, reported: dict | None = None) -> dict:
        payment = normalize_notification(reported or {})
        payment["imp_uid"] = imp_uid
        payment["pg_provider"] = payment["pg_provider"] or "mock"
        return payment

    def cancel_payment(self, imp_uid: str, amount: int, reason: str | None = None,
                       checksum: int | None = None) -> dict:
        return {
            "refund_id": f"mock_refund_{secrets.token_hex(6)}",
            "amount": amount,
            "cancel_amount": amount,
            "receipt_url": None,
        }


def get_gateway():
    """
    Adapter selected by PAYMENT_GATEWAY ("mock" or "portone"). Use it as a
    context manager so the HTTP connection pool is closed after the call.
    """
    name = (current_app.config.get("PAYMENT_GATEWAY") or "mock").lower()
    if name == "portone":
        return PortOneGateway(
            current_app.config["PORTONE_API_URL"],
            current_app.config["PORTONE_API_KEY"],
            current_app.config["PORTONE_API_SECRET"],
            timeout=current_app.config["GATEWAY_TIMEOUT_SECONDS"],
        )
    if name == "mock":
        return MockGateway()
    raise GatewayError(f"Unknown payment gateway: {name}")
