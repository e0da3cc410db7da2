import hashlib
import json
from flask import request, jsonify, current_app
import stripe
from . import bp
from carousel_billing.billing.errors import ConfigurationError
from carousel_billing.billing.sync import build_synchronizer
from carousel_billing.extensions import db, csrf
from carousel_billing.models import BillingEvent
from carousel_billing.services.billing import get_gateway
from carousel_billing.services.persistence import insert_if_absent


def _log_invalid_signature(raw_bytes: bytes) -> None:
    # Deterministic synthetic id; nothing from the untrusted payload is stored
    digest = hashlib.sha256(raw_bytes).hexdigest()[:32]
    try:
        insert_if_absent(
            db.session,
            BillingEvent,
            {
                "external_event_id": f"invalid:{digest}",
                "event_type": "signature_invalid",
                "signature_valid": False,
                "payload": {},
                "processed": False,
                "retries": 0,
            },
            conflict_cols=("external_event_id",),
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("stripe_webhook_invalid_signature_not_logged")


# ----- Stripe Webhook (subscriptions lifecycle) -----
@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies signature, then idempotently applies the event to the subscription mirror.
    200: processed or duplicate. 400: bad signature / malformed. 500: retry later.
    """
    raw_bytes = request.get_data(cache=False, as_text=False) or b""
    sig_header = request.headers.get("Stripe-Signature", "")

    # 1) Verify signature before anything touches state
    if not sig_header:
        return jsonify({"error": "missing_signature"}), 400
    try:
        event = get_gateway().construct_event(raw_bytes, sig_header)
    except ConfigurationError:
        current_app.logger.exception("stripe_webhook_not_configured")
        return jsonify({"error": "webhook_not_configured"}), 500
    except (stripe.SignatureVerificationError, ValueError, UnicodeDecodeError) as exc:
        current_app.logger.warning(json.dumps({
            "event": "stripe_webhook_signature_invalid",
            "error": type(exc).__name__,
        }))
        _log_invalid_signature(raw_bytes)
        return jsonify({"error": "invalid_signature"}), 400

    # 2) Shape check
    ev_id = event.get("id") if isinstance(event, dict) else None
    ev_type = event.get("type") if isinstance(event, dict) else None
    if not ev_id or not ev_type:
        return jsonify({"error": "malformed_event"}), 400

    # 3) Apply (idempotent on ev_id)
    try:
        outcome = build_synchronizer().ingest(event)
    except Exception:
        current_app.logger.exception("stripe_webhook_handler_error", extra={"event_id": ev_id, "type": ev_type})
        return jsonify({"error": "processing_failed"}), 500

    if outcome.duplicate:
        current_app.logger.info(json.dumps({"event": "stripe_webhook_duplicate", "event_id": ev_id}))
        return jsonify({"ok": True, "duplicate": True}), 200
    return jsonify({"ok": True}), 200
