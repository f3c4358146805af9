"""
Electronic signatures module for GxP compliance.

A signature in the e-log is a re-entry of username and password at the
moment of signing plus a declared reason taken from a fixed list. It is
checked against the identity store every time, even when the caller already
holds a session; no cryptographic signing is involved.
"""

import logging
from enum import Enum
from typing import Iterable, List, Optional, Union

from .access_control import IdentityStore, Role
from .config import ELogConfig, get_config
from .exceptions import (
    AccountInactiveError,
    AuthenticationError,
    AuthorizationError,
    ValidationError,
)
from .logbook.entities import UserDB

logger = logging.getLogger(__name__)


class SignatureMeaning(str, Enum):
    """Meaning of an electronic signature, used as the audit reason prefix."""

    SUBMISSION = "Submitted"
    APPROVAL = "Approved"


def canonical_reasons(
    meaning: SignatureMeaning, config: Optional[ELogConfig] = None
) -> List[str]:
    """Reasons a signer may declare for ``meaning``."""
    config = config or get_config()
    if meaning == SignatureMeaning.APPROVAL:
        return list(config.approve_reasons)
    return list(config.submit_reasons)


def validate_reason(
    reason: Optional[str],
    meaning: SignatureMeaning,
    config: Optional[ELogConfig] = None,
) -> str:
    """
    Check a declared signing reason.

    Args:
        reason: Reason as supplied by the signer
        meaning: What the signature means
        config: Configuration holding the canonical reasons

    Returns:
        The reason with surrounding whitespace removed

    Raises:
        ValidationError: If the reason is empty or not canonical
    """
    cleaned = (reason or "").strip()
    if not cleaned:
        raise ValidationError("A signing reason is required", field="reason")

    allowed = canonical_reasons(meaning, config)
    if cleaned not in allowed:
        raise ValidationError(
            f"Reason '{cleaned}' is not valid for {meaning.value.lower()} "
            f"signatures; expected one of: {'; '.join(allowed)}",
            field="reason",
        )
    return cleaned


def audit_reason(meaning: SignatureMeaning, reason: str) -> str:
    """Reason text stored on the audit record, e.g. ``Submitted: <reason>``."""
    return f"{meaning.value}: {reason}"


class SignatureVerifier:
    """Re-authenticates a signer and checks their role.

    Example:
        >>> verifier = SignatureVerifier(IdentityStore(session))
        >>> signer = verifier.verify("qauser", "secret", required_roles=["QA"])
    """

    def __init__(self, identity: IdentityStore):
        self.identity = identity

    def verify(
        self,
        username: str,
        password: str,
        required_roles: Optional[Iterable[Union[str, Role]]] = None,
    ) -> UserDB:
        """
        Verify a signature attempt.

        Args:
            username: Username of the signer
            password: Password entered at signing time
            required_roles: Roles allowed to sign; None or empty allows any
                active user

        Returns:
            The verified signer

        Raises:
            AuthenticationError: Unknown user or wrong password
            AccountInactiveError: The account is deactivated
            AuthorizationError: The signer's role is not in ``required_roles``
        """
        if not username or not password:
            raise AuthenticationError("Username and password are required to sign")

        user = self.identity.authenticate(username, password)
        if user is None:
            logger.warning(f"Signature verification failed for user {username}")
            raise AuthenticationError()

        if not user.is_active:
            logger.warning(f"Signature attempt by inactive user {username}")
            raise AccountInactiveError()

        allowed = [Role(r).value for r in (required_roles or [])]
        if allowed and user.role not in allowed:
            logger.warning(
                f"Signature by {username} ({user.role}) refused; "
                f"requires one of {', '.join(allowed)}"
            )
            raise AuthorizationError(
                f"Role {user.role} is not allowed to sign this record",
                required_roles=allowed,
            )

        logger.info(f"Signature verified for user {username}")
        return user
