import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import stripe

from creator_billing.errors import WebhookVerificationError

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class VerifiedEvent:
    event_id: str
    event_type: str
    payload: Dict[str, Any]


def _signed_at(sig_header: str) -> int:
    """Timestamp of a header that ``stripe.WebhookSignature`` already accepted."""
    for part in sig_header.split(','):
        key, _, value = part.partition('=')
        if key.strip() == 't':
            return int(value)
    raise WebhookVerificationError("Unable to extract timestamp from signature header")


def _as_dict(event: Any) -> Dict[str, Any]:
    # Plain dicts all the way down, so nothing downstream depends on StripeObject.
    to_dict = getattr(event, 'to_dict_recursive', None) or getattr(event, 'to_dict', None)
    return to_dict() if to_dict is not None else dict(event)


class WebhookReceiver:
    """
    Trust boundary for inbound Stripe events.

    ``verify`` reads and writes no state. Signatures are checked by
    ``stripe.Webhook``; the freshness window is checked here against an
    injectable clock, in both directions.
    """

    def __init__(self, secret: str, tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        if not secret:
            raise ValueError("Webhook signing secret must not be empty")
        self.secret = secret
        self.tolerance = tolerance

    def verify(self, payload: Union[bytes, str], sig_header: Optional[str],
               now: Optional[float] = None) -> VerifiedEvent:
        """
        Verify and parse a webhook delivery.

        :param payload: The raw request body, exactly as received.
        :param sig_header: The ``Stripe-Signature`` header value.
        :param now: Current unix time, defaults to ``time.time()``.
        :return: The verified event.
        :raises WebhookVerificationError: on a bad signature, a timestamp
            outside the tolerance, or a malformed envelope.
        """
        if not sig_header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        if isinstance(payload, bytes):
            try:
                payload = payload.decode('utf-8')
            except UnicodeDecodeError:
                raise WebhookVerificationError("Webhook payload is not valid UTF-8")

        try:
            # tolerance=None: the window is enforced below against ``now``.
            event = stripe.Webhook.construct_event(payload, sig_header, self.secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            logging.warning(f"Webhook signature verification failed: {e}")
            raise WebhookVerificationError(str(e))
        except ValueError:
            raise WebhookVerificationError("Webhook payload is not valid JSON")

        timestamp = _signed_at(sig_header)
        now = time.time() if now is None else now
        if abs(now - timestamp) > self.tolerance:
            logging.warning(f"Webhook timestamp {timestamp} outside tolerance of {self.tolerance}s")
            raise WebhookVerificationError("Timestamp outside the tolerance zone")

        envelope = _as_dict(event)
        if not envelope.get('id') or not envelope.get('type'):
            raise WebhookVerificationError("Webhook payload is missing 'id' or 'type'")

        return VerifiedEvent(event_id=envelope['id'], event_type=envelope['type'], payload=envelope)
