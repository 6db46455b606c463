# errors.py
"""Domain errors raised by the slot registry and the swap negotiator.

Each carries the HTTP status and machine-readable code the API reports.
Anything that is not a SwapError (store unreachable, driver failures) is an
infrastructure failure and is reported separately.
"""


class SwapError(Exception):
    status_code = 400
    code = "swap_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SwapError):
    """Missing or malformed input on create."""
    status_code = 400
    code = "validation_error"


class NotFoundError(SwapError):
    """Referenced slot or swap is absent, or not owned/targeted by the caller."""
    status_code = 404
    code = "not_found"


class ConflictError(SwapError):
    """Illegal state transition, or a concurrent writer got there first."""
    status_code = 409
    code = "conflict"


class StaleSwapError(SwapError):
    """Accept attempted after one of the swapped slots vanished."""
    status_code = 404
    code = "stale_swap"
