# Identity tokens handed to clients by the auth collaborator.
# A token is the user id signed with a timestamp; puzzles and devices are
# scoped to whichever user the token names.

from typing import Optional

from itsdangerous import BadSignature, TimestampSigner

from .config import SECRET_KEY, TOKEN_MAX_AGE_SECS

_signer = TimestampSigner(SECRET_KEY, salt="duet-identity")


def issue_token(user_id: str) -> str:
    return _signer.sign(user_id.encode()).decode()


def verify_token(token: str) -> Optional[str]:
    """Return the user id a token was issued for, or None if it is invalid or expired."""
    try:
        return _signer.unsign(token, max_age=TOKEN_MAX_AGE_SECS).decode()
    except BadSignature:
        # SignatureExpired is a BadSignature too
        return None
