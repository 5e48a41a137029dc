"""Organizations, memberships and invitations."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from pydantic import Field

from tenantauth.audit import AuditAction, AuditResource, AuditTrail
from tenantauth.notifications import EmailNotifier
from tenantauth.security.errors import AuthorizationError, ConflictError, NotFoundError
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import (
    MemberDetail,
    Organization,
    OrganizationInvite,
    OrganizationMember,
    OrganizationRole,
    utc_now,
)

logger = logging.getLogger(__name__)

INVITABLE_ROLES = (OrganizationRole.ADMIN.value, OrganizationRole.MEMBER.value)
MANAGING_ROLES = (OrganizationRole.OWNER.value, OrganizationRole.ADMIN.value)


class OrganizationWithMembers(Organization):
    """Organization together with its membership list."""

    members: List[MemberDetail] = Field(default_factory=list)


class OrganizationManager:
    """Tenant lifecycle and membership management."""

    def __init__(
        self,
        store: CredentialStore,
        notifier: Optional[EmailNotifier] = None,
        audit: Optional[AuditTrail] = None,
        invite_ttl_days: int = 7,
    ):
        """Initialize the manager.

        Args:
            store: Credential store
            notifier: Email sender for invitations (no email if None)
            audit: Audit trail
            invite_ttl_days: Lifetime of an invitation
        """
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.invite_ttl = timedelta(days=invite_ttl_days)

    def _audit(self, action: AuditAction, resource: AuditResource, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log_event(action, resource, **kwargs)

    def _require_organization(self, organization_id: str) -> Organization:
        organization = self.store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError("Organization not found")
        return organization

    # Organizations

    def create_organization(
        self,
        owner_id: str,
        name: str,
        slug: str,
        description: Optional[str] = None,
        website: Optional[str] = None,
    ) -> OrganizationWithMembers:
        """Create an organization with ``owner_id`` as its first owner.

        Both rows are written in one transaction, so an organization never
        exists without an owner.

        Raises:
            ValueError: If the name or slug is malformed
            ConflictError: If the slug is taken
        """
        now = utc_now()
        organization = Organization(
            organization_id=f"org_{secrets.token_hex(10)}",
            name=name,
            slug=slug.strip().lower(),
            description=description,
            website=website,
            created_at=now,
            updated_at=now,
        )
        owner = OrganizationMember(
            member_id=f"mem_{secrets.token_hex(10)}",
            organization_id=organization.organization_id,
            user_id=owner_id,
            role=OrganizationRole.OWNER,
            joined_at=now,
            updated_at=now,
        )
        self.store.create_organization(organization, owner)

        self._audit(
            AuditAction.ORGANIZATION_CREATE,
            AuditResource.ORGANIZATION,
            user_id=owner_id,
            organization_id=organization.organization_id,
            resource_id=organization.organization_id,
            details={"name": organization.name, "slug": organization.slug},
        )
        logger.info(f"Created organization {organization.organization_id} ({organization.slug})")
        return self.get_organization(organization.organization_id)

    def get_organization(self, organization_id: str) -> Optional[OrganizationWithMembers]:
        organization = self.store.get_organization(organization_id)
        if organization is None:
            return None
        return OrganizationWithMembers(
            **organization.model_dump(),
            members=self.store.list_members(organization_id),
        )

    def get_organization_by_slug(self, slug: str) -> Optional[OrganizationWithMembers]:
        """Active organization with the given slug."""
        organization = self.store.get_organization_by_slug(slug)
        if organization is None or not organization.is_active:
            return None
        return self.get_organization(organization.organization_id)

    def get_user_organizations(self, user_id: str) -> List[Tuple[Organization, str]]:
        """Organizations the user actively belongs to, with their role in each."""
        return self.store.list_user_organizations(user_id)

    def get_membership(self, organization_id: str, user_id: str) -> Optional[OrganizationMember]:
        return self.store.get_membership(organization_id, user_id)

    def update_organization(
        self, organization_id: str, updated_by: Optional[str] = None, **fields
    ) -> Organization:
        """Update name, description, website, logo or active flag.

        Raises:
            NotFoundError: If the organization does not exist
            ValueError: If a field cannot be updated
        """
        fields = {name: value for name, value in fields.items() if value is not None}
        if "name" in fields and not str(fields["name"]).strip():
            raise ValueError("Organization name cannot be empty")

        if not self.store.update_organization(organization_id, **fields):
            raise NotFoundError("Organization not found")

        self._audit(
            AuditAction.ORGANIZATION_UPDATE,
            AuditResource.ORGANIZATION,
            user_id=updated_by,
            organization_id=organization_id,
            resource_id=organization_id,
            details={"fields": sorted(fields)},
        )
        return self.store.get_organization(organization_id)

    def delete_organization(self, organization_id: str, deleted_by: Optional[str] = None) -> bool:
        """Delete an organization with its members and invites."""
        deleted = self.store.delete_organization(organization_id)
        if deleted:
            self._audit(
                AuditAction.ORGANIZATION_DELETE,
                AuditResource.ORGANIZATION,
                user_id=deleted_by,
                organization_id=organization_id,
                resource_id=organization_id,
            )
            logger.info(f"Deleted organization {organization_id}")
        return deleted

    # Invitations

    async def invite_member(
        self,
        organization_id: str,
        email: str,
        role: str,
        invited_by: str,
    ) -> Tuple[OrganizationInvite, bool]:
        """Create an invitation and try to email it.

        Args:
            organization_id: Target organization
            email: Invitee address
            role: ``admin`` or ``member``
            invited_by: User id of the inviter

        Returns:
            Tuple of (invite, email_sent)

        Raises:
            NotFoundError: If the organization does not exist
            ValueError: If the role cannot be granted by invitation
            ConflictError: If the address already belongs to a member
        """
        organization = self._require_organization(organization_id)

        role = role.value if isinstance(role, OrganizationRole) else role
        if role not in INVITABLE_ROLES:
            raise ValueError("Role must be 'admin' or 'member'")

        email = email.strip().lower()
        existing_user = self.store.get_user_by_email(email)
        if existing_user and self.store.get_membership(
            organization_id, existing_user.user_id, active_only=False
        ):
            raise ConflictError("User is already a member of this organization")

        now = utc_now()
        invite = OrganizationInvite(
            invite_id=f"inv_{secrets.token_hex(10)}",
            organization_id=organization_id,
            email=email,
            role=role,
            invited_by=invited_by,
            token=secrets.token_urlsafe(32),
            expires_at=now + self.invite_ttl,
            created_at=now,
        )
        self.store.insert_invite(invite)

        email_sent = False
        if self.notifier is not None:
            email_sent = await self.notifier.deliver(
                self.notifier.invitation_message(email, organization.name, role, invite.token)
            )

        self._audit(
            AuditAction.INVITE_SEND,
            AuditResource.ORGANIZATION_INVITE,
            user_id=invited_by,
            organization_id=organization_id,
            resource_id=invite.invite_id,
            details={"email": email, "role": role, "email_sent": email_sent},
        )
        return invite, email_sent

    def list_pending_invites(
        self, organization_id: str, now: Optional[datetime] = None
    ) -> List[OrganizationInvite]:
        """Unaccepted, unexpired invites."""
        now = now or utc_now()
        return [
            invite
            for invite in self.store.list_invites(organization_id)
            if not invite.is_expired(now)
        ]

    def cancel_invite(
        self, organization_id: str, invite_id: str, cancelled_by: Optional[str] = None
    ) -> bool:
        """Delete an invite belonging to ``organization_id``."""
        invite = self.store.get_invite(invite_id)
        if invite is None or invite.organization_id != organization_id:
            return False

        deleted = self.store.delete_invite(invite_id)
        if deleted:
            self._audit(
                AuditAction.INVITE_REJECT,
                AuditResource.ORGANIZATION_INVITE,
                user_id=cancelled_by,
                organization_id=organization_id,
                resource_id=invite_id,
            )
        return deleted

    def accept_invite(self, token: str, user_id: str, now: Optional[datetime] = None) -> bool:
        """Redeem an invite token for ``user_id``.

        Returns:
            True if a membership was created; False for unknown, expired or
            already accepted tokens and for users who are already members
        """
        now = now or utc_now()
        member = self.store.accept_invite(
            token,
            OrganizationMember(
                member_id=f"mem_{secrets.token_hex(10)}",
                organization_id="",
                user_id=user_id,
            ),
            now,
        )
        if member is None:
            return False

        self._audit(
            AuditAction.INVITE_ACCEPT,
            AuditResource.ORGANIZATION_INVITE,
            user_id=user_id,
            organization_id=member.organization_id,
            resource_id=member.member_id,
            details={"role": member.role},
        )
        logger.info(f"User {user_id} joined organization {member.organization_id}")
        return True

    # Members

    def _check_actor(
        self, actor_role: str, target: OrganizationMember, new_role: Optional[str] = None
    ) -> None:
        if actor_role not in MANAGING_ROLES:
            raise AuthorizationError("Forbidden - Admin or owner required", current=actor_role)
        touches_owner = OrganizationRole.OWNER.value in (target.role, new_role)
        if touches_owner and actor_role != OrganizationRole.OWNER.value:
            raise AuthorizationError(
                "Only owners can change owner roles",
                required=OrganizationRole.OWNER.value,
                current=actor_role,
            )

    def _get_member(self, organization_id: str, member_id: str) -> OrganizationMember:
        member = self.store.get_member(member_id)
        if member is None or member.organization_id != organization_id:
            raise NotFoundError("Member not found")
        return member

    def update_member_role(
        self,
        organization_id: str,
        member_id: str,
        new_role: str,
        actor_role: str,
        actor_id: Optional[str] = None,
    ) -> OrganizationMember:
        """Change a member's organization role.

        Raises:
            NotFoundError: If the member is not in the organization
            AuthorizationError: If the actor may not make this change
            MembershipError: If the last owner would be demoted
        """
        new_role = OrganizationRole(new_role).value
        target = self._get_member(organization_id, member_id)
        self._check_actor(actor_role, target, new_role)

        updated = self.store.change_member_role(organization_id, member_id, new_role)
        if updated is None:
            raise NotFoundError("Member not found")

        self._audit(
            AuditAction.MEMBER_ROLE_CHANGE,
            AuditResource.ORGANIZATION_MEMBER,
            user_id=actor_id,
            organization_id=organization_id,
            resource_id=member_id,
            details={"userId": target.user_id, "oldRole": target.role, "newRole": new_role},
        )
        return updated

    def remove_member(
        self,
        organization_id: str,
        member_id: str,
        actor_role: str,
        actor_id: Optional[str] = None,
    ) -> bool:
        """Remove a member from the organization.

        Raises:
            NotFoundError: If the member is not in the organization
            AuthorizationError: If the actor may not remove this member
            MembershipError: If the member is the last owner
        """
        target = self._get_member(organization_id, member_id)
        self._check_actor(actor_role, target)

        if not self.store.remove_member(organization_id, member_id):
            raise NotFoundError("Member not found")

        self._audit(
            AuditAction.MEMBER_REMOVE,
            AuditResource.ORGANIZATION_MEMBER,
            user_id=actor_id,
            organization_id=organization_id,
            resource_id=member_id,
            details={"userId": target.user_id, "role": target.role},
        )
        return True
