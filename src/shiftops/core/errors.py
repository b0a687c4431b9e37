# src/shiftops/core/errors.py

from __future__ import annotations

"""
Error types raised by the core.

Only InvalidTransition and EvidenceUploadFailure are meant for the user.
The rest are logged and recovered from locally (see session/outbox).
"""


class ShiftOpsError(Exception):
    """Base class for all engine errors."""


class InvalidTransition(ShiftOpsError):
    """Disallowed state change. Surfaced to the caller, never retried."""


class RoleMismatch(InvalidTransition):
    """The session's role may not perform this action on this task."""


class ClockAnomaly(ShiftOpsError):
    """Negative clock delta or inconsistent/stale offset."""


class SyncDeliveryFailure(ShiftOpsError):
    """Ephemeral channel unavailable; the shadow tier still holds the message."""


class PersistenceFailure(ShiftOpsError):
    """Remote write failed; local state stays optimistic."""


class EvidenceUploadFailure(ShiftOpsError):
    """Evidence blob could not be uploaded; the submission did not happen."""


class CorruptSnapshot(ShiftOpsError):
    """Local snapshot failed schema validation."""
