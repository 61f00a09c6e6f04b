from typing import Any, Dict, Optional

from errors import DuplicateIdentity, InvalidInput, InvalidReferralCode, ReferralCodeTaken
from logging_config import get_logger
from referral_engine import assign_slot, generate_referral_code

logger = get_logger(__name__)

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
REFERRAL_CODE_ATTEMPTS = 5


def public_user_fields(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "email": user["email"],
        "referral_code": user["referral_code"],
        "level": user["level"],
        "position": user["position"],
    }


def register_user(
    store,
    username: str,
    email: str,
    parent_referral_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    register a new user, optionally under the owner of `parent_referral_code`.

    rules (checked in this order, nothing is written on failure):
      - username 3..50 chars, email non-empty (after trimming)
      - username and email must be unused            -> DuplicateIdentity
      - a non-empty code must resolve to a user      -> InvalidReferralCode
      - the parent must have a free slot (max 8)     -> CapacityExceeded

    the capacity check, insert and child append all happen while holding the
    parent's update lock, so two concurrent sign-ups can't both take slot 8.
    a referral code that loses a race to a concurrent sign-up is regenerated
    (up to REFERRAL_CODE_ATTEMPTS times).
    """
    username = (username or "").strip()
    email = (email or "").strip()
    code = (parent_referral_code or "").strip()

    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise InvalidInput(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
        )
    if not email:
        raise InvalidInput("email cannot be empty")

    # 1) identity must be new
    if store.find_user_by_username_or_email(username, email) is not None:
        raise DuplicateIdentity("User with this username or email already exists")

    # 2) resolve the referrer, if any
    parent = None
    if code:
        parent = store.find_user_by_referral_code(code)
        if parent is None:
            raise InvalidReferralCode(f"Invalid referral code {code}")

    # 3) insert, regenerating the code if a concurrent sign-up took it first
    for attempt in range(1, REFERRAL_CODE_ATTEMPTS + 1):
        referral_code = generate_referral_code(username, store.find_user_by_referral_code)
        try:
            user = _insert_user(store, username, email, referral_code, parent)
            break
        except ReferralCodeTaken:
            logger.warning("referral_code_collision", referral_code=referral_code, attempt=attempt)
            if attempt == REFERRAL_CODE_ATTEMPTS:
                raise

    logger.info(
        "user_registered",
        user_id=user["id"],
        parent_id=user["parent_id"],
        position=user["position"],
        level=user["level"],
    )
    return public_user_fields(user)


def _insert_user(store, username, email, referral_code, parent) -> Dict[str, Any]:
    if parent is None:
        return store.create_user(
            username=username,
            email=email,
            referral_code=referral_code,
            parent_id=None,
            position=None,
            level=0,
        )

    # capacity check, insert and child append under the parent's lock
    with store.locked_user(parent["id"]) as locked_parent:
        position, level = assign_slot(locked_parent)
        user = store.create_user(
            username=username,
            email=email,
            referral_code=referral_code,
            parent_id=locked_parent["id"],
            position=position,
            level=level,
        )
        store.append_child_to_user(locked_parent["id"], user["id"])
    return user
