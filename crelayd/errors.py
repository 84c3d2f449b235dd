"""Error taxonomy for relay operations.

Every failure an operation reports to its originating connection is a
``RelayError``. The ``code`` travels in the ``group-error`` event body.
"""

from __future__ import annotations

from .constants import (
    E_CONFLICT,
    E_FORBIDDEN,
    E_INVALID,
    E_NOT_FOUND,
    E_PERSISTENCE,
)


class RelayError(Exception):
    code = "error"


class InvalidRequest(RelayError):
    code = E_INVALID


class NotFound(RelayError):
    code = E_NOT_FOUND


class Forbidden(RelayError):
    code = E_FORBIDDEN


class Conflict(RelayError):
    # Reserved. Duplicate invites are absorbed rather than rejected.
    code = E_CONFLICT


class PersistenceFailure(RelayError):
    code = E_PERSISTENCE
