class ReferralError(Exception):
    """base class for referral / commission failures."""


class InvalidInput(ReferralError, ValueError):
    """bad amount, missing purchaser id, malformed registration fields."""


class NotFound(ReferralError, ValueError):
    """unknown user id."""


class DuplicateIdentity(ReferralError, ValueError):
    """username or email already registered."""


class ReferralCodeTaken(DuplicateIdentity):
    """a generated referral code collided with an existing one."""

    def __init__(self, referral_code: str):
        self.referral_code = referral_code
        super().__init__(f"Referral code {referral_code} is already in use")


class InvalidReferralCode(ReferralError, ValueError):
    """a non-empty referral code that does not resolve to a user."""


class CapacityExceeded(ReferralError, ValueError):
    """referrer already has the maximum number of direct referrals."""

    def __init__(self, parent_id, limit: int):
        self.parent_id = parent_id
        self.limit = limit
        super().__init__(
            f"Referrer {parent_id} has reached maximum referral limit ({limit})."
        )


class PersistenceFailure(ReferralError, RuntimeError):
    """a write failed part-way through an operation.

    rows written before the failure are NOT rolled back.
    """
