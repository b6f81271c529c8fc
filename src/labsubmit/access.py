"""Access guard.

Authorization is table driven: :data:`ALLOWED_ROLES` says which roles may
attempt an action at all, then a resource check narrows it down.  Students
may only touch their own submissions.  Teachers and HODs may only touch
resources in subjects they are assigned to, which is answered by a
``teaches_subject`` callable supplied by the caller.

The caller's identity arrives as a :class:`Session`.  A session that is
still being restored (``RESOLVING``) is distinct from one that resolved to
nobody (``UNAUTHENTICATED``); the two produce different denial reasons so a
client can wait instead of redirecting to the login page.

Every denial carries a :class:`~labsubmit.errors.DenialReason`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional

from .errors import AuthorizationError, DenialReason


logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    HOD = "hod"


class Action(str, enum.Enum):
    RUN = "run"
    SAVE_DRAFT = "save_draft"
    SUBMIT = "submit"
    RECORD_EXECUTION = "record_execution"
    VIEW_SUBMISSION = "view_submission"
    EVALUATE = "evaluate"
    MANAGE_ASSIGNMENT = "manage_assignment"
    VIEW_ASSIGNMENT = "view_assignment"
    VIEW_REPORT = "view_report"
    MANAGE_SUBJECT = "manage_subject"


STAFF = frozenset({Role.TEACHER, Role.HOD})
EVERYONE = frozenset(Role)

ALLOWED_ROLES: Dict[Action, FrozenSet[Role]] = {
    Action.RUN: EVERYONE,
    Action.SAVE_DRAFT: frozenset({Role.STUDENT}),
    Action.SUBMIT: frozenset({Role.STUDENT}),
    Action.RECORD_EXECUTION: frozenset({Role.STUDENT}),
    Action.VIEW_SUBMISSION: EVERYONE,
    Action.EVALUATE: STAFF,
    Action.MANAGE_ASSIGNMENT: STAFF,
    Action.VIEW_ASSIGNMENT: EVERYONE,
    Action.VIEW_REPORT: STAFF,
    Action.MANAGE_SUBJECT: frozenset({Role.HOD}),
}


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


class SessionState(enum.Enum):
    RESOLVING = "resolving"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class Session:
    state: SessionState
    actor: Optional[Actor] = None

    @classmethod
    def resolving(cls) -> "Session":
        return cls(SessionState.RESOLVING)

    @classmethod
    def anonymous(cls) -> "Session":
        return cls(SessionState.UNAUTHENTICATED)

    @classmethod
    def of(cls, user_id: str, role: Role | str) -> "Session":
        return cls(SessionState.AUTHENTICATED, Actor(user_id, Role(role)))


@dataclass(frozen=True)
class Resource:
    """What an action targets.

    ``owner_id`` is the student who owns a submission; ``subject_id`` scopes
    staff access.  ``exists=False`` marks a lookup that found nothing.
    """

    owner_id: Optional[str] = None
    subject_id: Optional[str] = None
    exists: bool = True

    @classmethod
    def missing(cls) -> "Resource":
        return cls(exists=False)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenialReason] = None
    actor: Optional[Actor] = None

    def raise_for_denial(self) -> Actor:
        if not self.allowed:
            raise AuthorizationError(self.reason)
        return self.actor


class AccessGuard:
    def __init__(self, teaches_subject: Callable[[Actor, str], bool]) -> None:
        self._teaches_subject = teaches_subject

    def authorize(
        self, session: Session, action: Action, resource: Optional[Resource] = None
    ) -> Decision:
        if session.state is SessionState.RESOLVING:
            return self._deny(session, action, DenialReason.SESSION_RESOLVING)
        if session.state is SessionState.UNAUTHENTICATED or session.actor is None:
            return self._deny(session, action, DenialReason.UNAUTHENTICATED)

        actor = session.actor
        if resource is not None and not resource.exists:
            return self._deny(session, action, DenialReason.NOT_FOUND)
        if actor.role not in ALLOWED_ROLES[action]:
            return self._deny(session, action, DenialReason.INSUFFICIENT_ROLE)

        if resource is not None:
            if actor.role is Role.STUDENT:
                # Students act on their own records; assignments are readable by all
                if resource.owner_id is not None and resource.owner_id != actor.user_id:
                    return self._deny(session, action, DenialReason.NOT_OWNER)
            elif resource.subject_id is not None:
                if not self._teaches_subject(actor, resource.subject_id):
                    return self._deny(session, action, DenialReason.NOT_OWNER)

        return Decision(True, actor=actor)

    def require(
        self, session: Session, action: Action, resource: Optional[Resource] = None
    ) -> Actor:
        """Like :meth:`authorize` but raise :class:`AuthorizationError` on denial."""
        return self.authorize(session, action, resource).raise_for_denial()

    @staticmethod
    def _deny(session: Session, action: Action, reason: DenialReason) -> Decision:
        user = session.actor.user_id if session.actor else "-"
        logger.info("Denied %s for %s: %s", action.value, user, reason.value)
        return Decision(False, reason=reason, actor=session.actor)
