"""
Webhook signature verification against an ordered list of signing secrets.

Test-mode and live-mode deliveries arrive at the same endpoint, each signed
with its own secret. Each secret is a named verifier; the first one that
accepts the Stripe-Signature header wins and its name is kept for the audit
log.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import stripe

from coursepay.core.config import Settings
from coursepay.core.errors import ConfigurationError


@dataclass(frozen=True)
class SignatureVerifier:
    name: str
    secret: str
    tolerance: int = 300

    def verify(self, payload: str, signature_header: str) -> bool:
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.secret, self.tolerance
            )
        except stripe.SignatureVerificationError:
            return False
        return True


class VerifierChain:
    def __init__(self, verifiers: Sequence[SignatureVerifier]):
        if not verifiers:
            raise ConfigurationError(
                "No webhook signing secret configured "
                "(set STRIPE_WEBHOOK_SECRET_TEST and/or STRIPE_WEBHOOK_SECRET_LIVE)"
            )
        self.verifiers = list(verifiers)

    @classmethod
    def from_settings(cls, settings: Settings) -> "VerifierChain":
        return cls([
            SignatureVerifier(name, secret, settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS)
            for name, secret in settings.webhook_secrets()
        ])

    @property
    def names(self) -> list[str]:
        return [v.name for v in self.verifiers]

    def match(self, payload: str, signature_header: Optional[str]) -> Optional[str]:
        """Return the name of the first verifier accepting the signature, or None."""
        if not signature_header:
            return None
        for verifier in self.verifiers:
            if verifier.verify(payload, signature_header):
                return verifier.name
        return None
