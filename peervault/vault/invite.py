"""Invite code validation.

An invite code is ``<vaultId>/<secret>``. Both sides are made of letters,
digits and hyphens (legacy vault ids carry no hyphens) and the whole code is
at least 100 characters long.
"""
import re
import logging

from ..exceptions import InvalidInviteFormatError

logger = logging.getLogger("peervault.vault")

INVITE_CODE_REGEX = re.compile(r"^[a-zA-Z0-9-]+/[a-zA-Z0-9-]+$")
INVITE_CODE_MIN_LENGTH = 100


def validate_invite_code(code) -> str:
    """Return ``code`` unchanged if it is a well-formed invite code.

    Raises:
        InvalidInviteFormatError: For non-strings, short codes or bad characters.
    """
    if not isinstance(code, str):
        logger.error("Invalid invite code: expected a string, got %s", type(code).__name__)
        raise InvalidInviteFormatError("Invalid invite code format")
    if len(code) < INVITE_CODE_MIN_LENGTH or not INVITE_CODE_REGEX.fullmatch(code):
        # never log the code itself, it carries the pairing secret
        logger.error("Invalid invite code: length=%d", len(code))
        raise InvalidInviteFormatError("Invalid invite code format")
    return code


def parse_invite_code(code) -> tuple[str, str]:
    """Validate and split an invite code into ``(vault_id, secret)``."""
    vault_id, secret = validate_invite_code(code).split("/", 1)
    return vault_id, secret
