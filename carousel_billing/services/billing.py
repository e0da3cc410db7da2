from typing import Any, Dict, List, Optional
from flask import current_app
from stripe import StripeClient
import stripe

from carousel_billing.billing.errors import ConfigurationError, ProviderUnavailable


def _as_dict(obj: Any) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """
    Thin wrapper over the Stripe SDK for the calls the billing subsystem makes.
    SDK errors surface as ProviderUnavailable; a missing key is a ConfigurationError.
    """

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

    @classmethod
    def from_config(cls) -> "StripeGateway":
        cfg = current_app.config
        return cls(cfg.get("STRIPE_SECRET_KEY"), cfg.get("STRIPE_WEBHOOK_SECRET"))

    def _client(self) -> StripeClient:
        if not self._secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        return StripeClient(self._secret_key)

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        client = self._client()
        try:
            result = client.customers.list(params={"email": email, "limit": 1})
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"customer lookup failed: {exc.__class__.__name__}") from exc
        data = _as_dict(result).get("data") or []
        return _as_dict(data[0]) if data else None

    def list_active_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        client = self._client()
        try:
            result = client.subscriptions.list(params={"customer": customer_id, "status": "active", "limit": 1})
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"subscription list failed: {exc.__class__.__name__}") from exc
        return [_as_dict(s) for s in (_as_dict(result).get("data") or [])]

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        client = self._client()
        try:
            sub = client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise ProviderUnavailable(f"subscription retrieve failed: {exc.__class__.__name__}") from exc
        return _as_dict(sub)

    def construct_event(self, raw_body: bytes, sig_header: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header over the raw body and parse the event.
        Raises stripe.SignatureVerificationError / ValueError on a bad signature or payload.
        """
        if not self._webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        event = stripe.Webhook.construct_event(
            payload=raw_body.decode("utf-8"),
            sig_header=sig_header,
            secret=self._webhook_secret,
        )
        return _as_dict(event)


def get_gateway():
    """The app's gateway; tests register a fake under app.extensions["stripe_gateway"]."""
    gateway = current_app.extensions.get("stripe_gateway")
    if gateway is None:
        gateway = StripeGateway.from_config()
    return gateway


def first_price(sub_obj: Dict[str, Any]) -> Dict[str, Any]:
    """First item drives price/plan for simple one-price subs."""
    items = (sub_obj.get("items") or {}).get("data") or []
    if not items:
        return {}
    return items[0].get("price") or {}


def period_bounds(sub_obj: Dict[str, Any]):
    """
    (start, end) unix timestamps. Newer Stripe API versions moved the period
    onto subscription items, so fall back to the first item.
    """
    start = sub_obj.get("current_period_start")
    end = sub_obj.get("current_period_end")
    if start is None or end is None:
        items = (sub_obj.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return start, end
