"""
Errors raised by the entitlement subsystem.
"""
from typing import Optional


class EntitlementError(Exception):
    """Base class for entitlement and billing failures."""

    code = "entitlement_error"
    status_code = 500


class UserNotFound(EntitlementError):
    code = "user_not_found"
    status_code = 404

    def __init__(self, lookup_key):
        self.lookup_key = lookup_key
        super().__init__(f"User not found: {lookup_key}")


class TrialNotEligible(EntitlementError):
    code = "trial_not_eligible"
    status_code = 400

    def __init__(self, reason: str, user_id: Optional[int] = None):
        self.reason = reason
        self.user_id = user_id
        super().__init__(f"Trial not available: {reason}")


class GatewayUnavailable(EntitlementError):
    """The billing gateway could not be reached, timed out, or refused the call."""

    code = "gateway_unavailable"
    status_code = 503


class SignatureVerificationFailed(EntitlementError):
    code = "invalid_signature"
    status_code = 400


class MalformedEvent(EntitlementError):
    """A verified gateway event whose shape cannot be processed."""

    code = "malformed_event"
    status_code = 400


class StaleEntitlementWrite(EntitlementError):
    """Another writer changed the user row between our read and our write."""

    code = "stale_entitlement_write"
    status_code = 409

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"Concurrent entitlement update for user {user_id}")
