"""Error taxonomy shared by the stores, the engines and the HTTP layer.

Every failure is reported as a structured result: a ``kind`` plus a
human-readable ``reason``.  Extra keyword arguments are carried through to
``to_dict`` so callers can see, for example, which transactions blocked a
delete.
"""


class CirculationError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, reason, **details):
        super().__init__(reason)
        self.reason = reason
        self.details = details

    def to_dict(self):
        payload = {"error": self.kind, "reason": self.reason}
        payload.update(self.details)
        return payload


class NotFound(CirculationError):
    """Entity id unknown."""

    kind = "not_found"
    status_code = 404


class ValidationError(CirculationError):
    """Malformed dates, out-of-range values, bad field formats."""

    kind = "validation_error"
    status_code = 400


class EligibilityError(CirculationError):
    """Member may not borrow: suspended, at limit, or blocked by fines."""

    kind = "eligibility_error"
    status_code = 400

    def __init__(self, reasons):
        super().__init__("member not eligible: " + ", ".join(reasons), reasons=list(reasons))
        self.reasons = list(reasons)


class StateConflict(CirculationError):
    """Copy already borrowed, transaction closed, renewal cap reached..."""

    kind = "state_conflict"
    status_code = 409
