# Overview: Payment gateway adapter (Razorpay REST API over httpx).

from __future__ import annotations

import httpx
from flask import current_app

from ..errors import ErrorKind, StorefrontError


class GatewayError(StorefrontError):
    """The payment gateway was unreachable or refused the request."""
    default_kind = ErrorKind.GATEWAY_ERROR


class PaymentGateway:
    """
    Interface the payment workflow depends on.

    Amounts are integer paise. Implementations raise GatewayError for any
    transport or API failure.
    """

    key_id: str = ""

    def create_order(self, amount_paise: int, receipt: str, notes: dict | None = None) -> dict:
        raise NotImplementedError

    def fetch_order(self, gateway_order_id: str) -> dict:
        raise NotImplementedError

    def refund(self, payment_id: str, amount_paise: int, notes: dict | None = None) -> dict:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        api_base: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        if not self.key_id or not self._key_secret:
            raise GatewayError("Payment gateway is not configured")

        try:
            with httpx.Client(
                base_url=self._api_base,
                auth=(self.key_id, self._key_secret),
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            raise GatewayError(f"Payment gateway unreachable: {exc}")

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            raise GatewayError(
                description or f"Payment gateway returned HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )
        try:
            body = response.json()
        except ValueError:
            raise GatewayError(
                "Payment gateway returned an unreadable response",
                details={"status_code": response.status_code},
            )
        if not isinstance(body, dict):
            raise GatewayError(
                "Payment gateway returned an unexpected response",
                details={"status_code": response.status_code},
            )
        return body

    def create_order(self, amount_paise: int, receipt: str, notes: dict | None = None) -> dict:
        return self._request("POST", "/orders", {
            "amount": amount_paise,
            "currency": "INR",
            "receipt": receipt,
            "notes": notes or {},
        })

    def fetch_order(self, gateway_order_id: str) -> dict:
        return self._request("GET", f"/orders/{gateway_order_id}")

    def refund(self, payment_id: str, amount_paise: int, notes: dict | None = None) -> dict:
        return self._request("POST", f"/payments/{payment_id}/refund", {
            "amount": amount_paise,
            "notes": notes or {},
        })


def build_gateway(config) -> RazorpayGateway:
    return RazorpayGateway(
        key_id=config.get("RAZORPAY_KEY_ID", ""),
        key_secret=config.get("RAZORPAY_KEY_SECRET", ""),
        api_base=config.get("RAZORPAY_API_BASE", "https://api.razorpay.com/v1"),
        timeout=float(config.get("RAZORPAY_TIMEOUT_SECONDS", 15)),
    )


def get_gateway() -> PaymentGateway:
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        gateway = build_gateway(current_app.config)
        current_app.extensions["payment_gateway"] = gateway
    return gateway
