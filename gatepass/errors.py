"""
Error taxonomy shared by the reconciliation pipeline and the check-in
service. Everything below those two layers raises one of these and lets the
caller decide; the HTTP layer maps them 1:1 onto status codes.

Email failures have no class here: they are reported through the
pipeline result's ``email_status`` and never raised.
"""
from __future__ import annotations


class GatePassError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.reason, "code": self.code}


# --- input validation (no side effects happened) ---
class InvalidInput(GatePassError):
    status_code = 400
    code = "invalid_input"


class MalformedSerial(InvalidInput):
    code = "malformed_serial"


class SerialNotFound(GatePassError):
    status_code = 404
    code = "not_found"


# --- payment gateway ---
class PaymentNotVerified(GatePassError):
    """gateway did not prove the payment settled; no serials were issued"""
    status_code = 402
    code = "payment_not_verified"


class GatewayError(GatePassError):
    """gateway unreachable or returned garbage; safe to retry"""
    status_code = 502
    code = "gateway_error"


# --- store ---
class PersistenceConflict(GatePassError):
    """serial collisions outlasted the retry limit"""
    status_code = 409
    code = "persistence_conflict"


class StoreUnavailable(GatePassError):
    status_code = 503
    code = "store_unavailable"
