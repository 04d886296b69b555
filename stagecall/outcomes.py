"""Tagged results returned by lifecycle operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

FailureKind = Literal[
    "Unauthorized",
    "Forbidden",
    "ValidationFailed",
    "NotFound",
    "NotDraft",
    "NoRecipients",
    "DeadlinePassed",
    "PersistenceFailed",
]

DEFAULT_MESSAGES: dict[str, str] = {
    "Unauthorized": "Sign in to manage rehearsals.",
    "Forbidden": "You are not allowed to manage the rehearsal schedule.",
    "ValidationFailed": "Please check title, date and time.",
    "NotFound": "Rehearsal not found.",
    "NotDraft": "This rehearsal has already been published.",
    "NoRecipients": "There are no members to invite.",
    "DeadlinePassed": "The registration deadline has passed. Please use the emergency option.",
    "PersistenceFailed": "The rehearsal could not be saved.",
}

HTTP_STATUS: dict[str, int] = {
    "Unauthorized": 401,
    "Forbidden": 403,
    "ValidationFailed": 400,
    "NotFound": 404,
    "NotDraft": 409,
    "NoRecipients": 422,
    "DeadlinePassed": 422,
    "PersistenceFailed": 500,
}


class LifecycleError(Exception):
    """Raised inside an operation for an expected, user-facing failure."""

    def __init__(self, kind: FailureKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        super().__init__(self.message)


@dataclass(frozen=True)
class Outcome:
    ok: bool
    rehearsal_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    error: FailureKind | None = None
    message: str | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def success(
        cls,
        rehearsal_id: str | None = None,
        *,
        data: dict[str, Any] | None = None,
        warnings: list[str] | tuple[str, ...] = (),
    ) -> "Outcome":
        return cls(
            ok=True,
            rehearsal_id=rehearsal_id,
            data=data or {},
            warnings=tuple(warnings),
        )

    @classmethod
    def failure(cls, kind: FailureKind, message: str | None = None) -> "Outcome":
        return cls(ok=False, error=kind, message=message or DEFAULT_MESSAGES[kind])

    @classmethod
    def from_error(cls, exc: LifecycleError) -> "Outcome":
        return cls.failure(exc.kind, exc.message)

    @property
    def status_code(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS.get(self.error or "", 500)

    def as_error_payload(self) -> dict[str, str | None]:
        return {"error": self.error, "message": self.message}
