"""User account lookups."""

import pwd


def username_for_uid(uid: int) -> str:
    """Return the account name for uid, or the decimal uid if it has none."""
    try:
        return pwd.getpwuid(uid).pw_name
    except (KeyError, OverflowError):
        return str(uid)
