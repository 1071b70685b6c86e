"""
============================================================================
Escalation Resolver - Approval Authority with Leave and Delegation
============================================================================

Reliability Level: L6 Critical
Traceability: Resolutions are logged with the requesting correlation_id

Determines which actor currently holds approval authority at each stage:

    Stage 1: the student's mentor.
             Mentor on leave -> stage-2 authority (escalated).
    Stage 2: the department head.
             Head on leave -> the head's active delegate.
             No delegate -> pending manual routing (no actor, no drop).
    Stage 3: the hostel authority of the student's residence,
             with the same leave/delegate rule.

An effective DelegationGrant lets its holder act with the grantor's full
authority on any item the grantor could decide, not only escalated ones.
Only one grant per authority is active at a time; granting a new one
deactivates the previous.

ERROR CODES:
    - VAL-001: Invalid grant or leave window
    - NF-002: Unknown staff member

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging

from services.pass_errors import PassErrorCode, ValidationError, NotFoundError
from services.pass_models import (
    ApprovalStage,
    Student,
    StaffMember,
    LeaveRecord,
    DelegationGrant,
    LeaveStatus,
    new_id,
)

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class AuthorityResolution:
    """
    Who may decide a stage right now.

    principal_id is the authority whose power is exercised: equal to
    actor_id unless actor_id is a delegate, and still set when the
    request is pending manual routing.
    """
    stage: str
    actor_id: Optional[str]
    is_delegate: bool = False
    escalated: bool = False
    pending_manual_routing: bool = False
    principal_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "actor_id": self.actor_id,
            "is_delegate": self.is_delegate,
            "escalated": self.escalated,
            "pending_manual_routing": self.pending_manual_routing,
            "principal_id": self.principal_id,
        }


class EscalationResolver:
    """
    Stage authority resolution over staff leave and delegation records.

    Reliability Level: L6 Critical
    Side Effects: Management operations write leave and delegation rows
    """

    def __init__(self, directory: Any) -> None:
        self._directory = directory

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve_authority(
        self,
        stage: ApprovalStage,
        student: Student,
        on_date: date,
        correlation_id: Optional[str] = None,
    ) -> AuthorityResolution:
        """
        Resolve the actor holding authority for `stage` on `on_date`.

        Args:
            stage: ApprovalStage
            student: Requester whose approver chain is followed
            on_date: Day the authority is evaluated for (campus date)
            correlation_id: Audit trail identifier
        """
        if stage == ApprovalStage.STAGE1:
            mentor_id = student.mentor_id
            if mentor_id is not None and not self._directory.is_on_leave(mentor_id, on_date):
                resolution = AuthorityResolution(
                    stage=stage.value, actor_id=mentor_id, principal_id=mentor_id
                )
            else:
                head = self._directory.find_department_head(student.department_id)
                resolution = self._resolve_with_delegate(
                    stage, head, on_date, escalated=True
                )
        elif stage == ApprovalStage.STAGE2:
            head = self._directory.find_department_head(student.department_id)
            resolution = self._resolve_with_delegate(stage, head, on_date)
        else:
            warden = self._directory.find_hostel_authority(student.residence_id)
            resolution = self._resolve_with_delegate(stage, warden, on_date)

        logger.debug(
            f"[ESCALATION] Authority resolved | "
            f"stage={stage.value} | "
            f"student_id={student.student_id} | "
            f"actor_id={resolution.actor_id} | "
            f"is_delegate={resolution.is_delegate} | "
            f"escalated={resolution.escalated} | "
            f"pending_manual_routing={resolution.pending_manual_routing} | "
            f"correlation_id={correlation_id}"
        )
        return resolution

    def _resolve_with_delegate(
        self,
        stage: ApprovalStage,
        authority: Optional[StaffMember],
        on_date: date,
        escalated: bool = False,
    ) -> AuthorityResolution:
        if authority is None:
            return AuthorityResolution(
                stage=stage.value,
                actor_id=None,
                escalated=escalated,
                pending_manual_routing=True,
            )

        if not self._directory.is_on_leave(authority.actor_id, on_date):
            return AuthorityResolution(
                stage=stage.value,
                actor_id=authority.actor_id,
                escalated=escalated,
                principal_id=authority.actor_id,
            )

        grant = self.active_delegation(authority.actor_id, on_date)
        if grant is not None:
            return AuthorityResolution(
                stage=stage.value,
                actor_id=grant.delegate_id,
                is_delegate=True,
                escalated=escalated,
                principal_id=authority.actor_id,
            )

        logger.warning(
            f"[ESCALATION] No available authority, pending manual routing | "
            f"stage={stage.value} | "
            f"principal_id={authority.actor_id}"
        )
        return AuthorityResolution(
            stage=stage.value,
            actor_id=None,
            escalated=escalated,
            pending_manual_routing=True,
            principal_id=authority.actor_id,
        )

    def can_act(
        self,
        stage: ApprovalStage,
        actor_id: str,
        student: Student,
        on_date: date,
        forwarded_to: Optional[str] = None,
    ) -> bool:
        """
        True if actor_id may decide `stage` for this student's request.

        Stage 1: the resolved authority or the forwarding target.
        Stage 2: the department head, the head's effective delegate, or the
                 forwarding target.
        Stage 3: the hostel authority or its effective delegate.
        """
        if stage == ApprovalStage.STAGE1:
            if forwarded_to is not None and actor_id == forwarded_to:
                return True
            resolution = self.resolve_authority(stage, student, on_date)
            return resolution.actor_id is not None and resolution.actor_id == actor_id

        if stage == ApprovalStage.STAGE2:
            if forwarded_to is not None and actor_id == forwarded_to:
                return True
            authority = self._directory.find_department_head(student.department_id)
        else:
            authority = self._directory.find_hostel_authority(student.residence_id)

        if authority is None:
            return False
        if actor_id == authority.actor_id:
            return True
        grant = self.active_delegation(authority.actor_id, on_date)
        return grant is not None and grant.delegate_id == actor_id

    # =========================================================================
    # Delegation
    # =========================================================================

    def active_delegation(self, authority_id: str, on_date: date) -> Optional[DelegationGrant]:
        for grant in self._directory.list_active_delegations(authority_id=authority_id):
            if grant.is_effective(on_date):
                return grant
        return None

    def delegated_authorities(self, delegate_id: str, on_date: date) -> List[str]:
        """Authorities whose power delegate_id currently holds."""
        return [
            grant.authority_id
            for grant in self._directory.list_active_delegations(delegate_id=delegate_id)
            if grant.is_effective(on_date)
        ]

    def grant_delegation(
        self,
        authority_id: str,
        delegate_id: str,
        starts_on: date,
        ends_on: date,
        correlation_id: Optional[str] = None,
    ) -> DelegationGrant:
        """
        Activate a grant, deactivating the authority's previous one.

        Raises:
            ValidationError: Window inverted or self-delegation
            NotFoundError: Unknown authority or delegate
        """
        if ends_on < starts_on:
            raise ValidationError(
                "Delegation window ends before it starts",
                correlation_id=correlation_id,
            )
        if authority_id == delegate_id:
            raise ValidationError(
                "An authority cannot delegate to itself",
                correlation_id=correlation_id,
            )
        for actor_id in (authority_id, delegate_id):
            if self._directory.get_staff(actor_id) is None:
                raise NotFoundError(
                    f"Staff member not found: {actor_id}",
                    error_code=PassErrorCode.ACTOR_NOT_FOUND,
                    correlation_id=correlation_id,
                )

        grant = DelegationGrant(
            id=new_id(),
            authority_id=authority_id,
            delegate_id=delegate_id,
            starts_on=starts_on,
            ends_on=ends_on,
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
        self._directory.activate_delegation(grant)

        logger.info(
            f"[ESCALATION] Delegation granted | "
            f"authority_id={authority_id} | "
            f"delegate_id={delegate_id} | "
            f"window={starts_on.isoformat()}..{ends_on.isoformat()} | "
            f"correlation_id={correlation_id}"
        )
        return grant

    def revoke_delegation(self, authority_id: str, correlation_id: Optional[str] = None) -> int:
        revoked = self._directory.revoke_delegation(authority_id)
        logger.info(
            f"[ESCALATION] Delegation revoked | "
            f"authority_id={authority_id} | "
            f"revoked={revoked} | "
            f"correlation_id={correlation_id}"
        )
        return revoked

    # =========================================================================
    # Leave
    # =========================================================================

    def register_leave(
        self,
        actor_id: str,
        starts_on: date,
        ends_on: date,
        leave_type: str = "",
        reason: str = "",
        correlation_id: Optional[str] = None,
    ) -> LeaveRecord:
        """
        Record an approved leave window for a staff member.

        Raises:
            ValidationError: Window inverted
            NotFoundError: Unknown staff member
        """
        if ends_on < starts_on:
            raise ValidationError(
                "Leave window ends before it starts",
                correlation_id=correlation_id,
            )
        if self._directory.get_staff(actor_id) is None:
            raise NotFoundError(
                f"Staff member not found: {actor_id}",
                error_code=PassErrorCode.ACTOR_NOT_FOUND,
                correlation_id=correlation_id,
            )

        leave = LeaveRecord(
            id=new_id(),
            actor_id=actor_id,
            starts_on=starts_on,
            ends_on=ends_on,
            status=LeaveStatus.APPROVED.value,
            leave_type=leave_type,
            reason=reason,
        )
        self._directory.add_leave(leave)

        logger.info(
            f"[ESCALATION] Leave registered | "
            f"actor_id={actor_id} | "
            f"window={starts_on.isoformat()}..{ends_on.isoformat()} | "
            f"correlation_id={correlation_id}"
        )
        return leave


__all__ = [
    "AuthorityResolution",
    "EscalationResolver",
]
