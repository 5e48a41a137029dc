"""Tests for organizations, memberships and invitations."""

import asyncio
import smtplib
from datetime import timedelta

import pytest

from tenantauth.audit import AuditAction, AuditTrail
from tenantauth.notifications import EmailNotifier
from tenantauth.organizations import OrganizationManager
from tenantauth.security.errors import (
    AuthorizationError,
    ConflictError,
    MembershipError,
    NotFoundError,
)
from tenantauth.storage.models import OrganizationRole, utc_now


@pytest.fixture
def audit(store):
    return AuditTrail(store)


@pytest.fixture
def orgs(store, audit):
    return OrganizationManager(store, notifier=EmailNotifier(enabled=False), audit=audit)


@pytest.fixture
def owner(make_user):
    return make_user()


@pytest.fixture
def organization(orgs, owner):
    return orgs.create_organization(owner.user_id, "Acme Inc", "acme")


def _join(orgs, organization, user, role="member"):
    """Add ``user`` through the invitation flow and return their membership."""
    token = _invite_token(orgs, organization, user.email, role)
    assert orgs.accept_invite(token, user.user_id)
    return orgs.get_membership(organization.organization_id, user.user_id)


def _invite_token(orgs, organization, email, role="member"):
    inviter = organization.members[0].user_id
    invite, _ = asyncio.run(
        orgs.invite_member(organization.organization_id, email, role, invited_by=inviter)
    )
    return invite.token


class TestCreateOrganization:
    """Organization creation."""

    def test_creator_is_owner(self, orgs, organization, owner):
        assert organization.slug == "acme"
        assert organization.organization_id.startswith("org_")
        assert len(organization.members) == 1
        assert organization.members[0].user_id == owner.user_id
        assert organization.members[0].role == OrganizationRole.OWNER.value
        assert organization.members[0].email == owner.email

    def test_slug_is_normalized(self, orgs, owner):
        created = orgs.create_organization(owner.user_id, "Beta", "  Beta-Co ")
        assert created.slug == "beta-co"
        assert orgs.get_organization_by_slug("beta-co").organization_id == (
            created.organization_id
        )

    def test_invalid_slug(self, orgs, owner):
        with pytest.raises(ValueError):
            orgs.create_organization(owner.user_id, "Bad", "not a slug!")

    def test_duplicate_slug_leaves_no_orphan_membership(self, orgs, organization, make_user):
        other = make_user()
        with pytest.raises(ConflictError):
            orgs.create_organization(other.user_id, "Acme Again", "acme")
        assert orgs.get_user_organizations(other.user_id) == []

    def test_user_organizations(self, orgs, organization, owner):
        memberships = orgs.get_user_organizations(owner.user_id)
        assert [(o.organization_id, role) for o, role in memberships] == [
            (organization.organization_id, "owner")
        ]

    def test_create_is_audited(self, orgs, organization, audit):
        logs = audit.get_audit_logs(
            organization_id=organization.organization_id,
            actions=[AuditAction.ORGANIZATION_CREATE],
        )
        assert len(logs) == 1


class TestUpdateOrganization:
    """Organization updates and deletion."""

    def test_update_fields(self, orgs, organization):
        updated = orgs.update_organization(
            organization.organization_id, name="Acme Corp", website="https://acme.test"
        )
        assert updated.name == "Acme Corp"
        assert updated.website == "https://acme.test"
        assert updated.slug == "acme"

    def test_empty_name_rejected(self, orgs, organization):
        with pytest.raises(ValueError):
            orgs.update_organization(organization.organization_id, name="  ")

    def test_update_missing(self, orgs):
        with pytest.raises(NotFoundError):
            orgs.update_organization("org_missing", name="x")

    def test_inactive_hidden_by_slug(self, orgs, organization):
        orgs.update_organization(organization.organization_id, is_active=False)
        assert orgs.get_organization_by_slug("acme") is None
        assert orgs.get_organization(organization.organization_id) is not None

    def test_delete(self, orgs, organization, owner):
        assert orgs.delete_organization(organization.organization_id, deleted_by=owner.user_id)
        assert orgs.get_organization(organization.organization_id) is None
        assert orgs.get_user_organizations(owner.user_id) == []
        assert not orgs.delete_organization(organization.organization_id)


class TestInvitations:
    """Invitation issue, acceptance and cancellation."""

    @pytest.mark.asyncio
    async def test_invite_without_email_delivery(self, orgs, organization, owner):
        invite, email_sent = await orgs.invite_member(
            organization.organization_id, " New@Example.com ", "admin", owner.user_id
        )
        assert invite.email == "new@example.com"
        assert invite.role == "admin"
        assert invite.invite_id.startswith("inv_")
        assert invite.expires_at - invite.created_at == timedelta(days=7)
        assert email_sent is False

    @pytest.mark.asyncio
    async def test_owner_role_not_invitable(self, orgs, organization, owner):
        with pytest.raises(ValueError):
            await orgs.invite_member(
                organization.organization_id, "x@example.com", "owner", owner.user_id
            )

    @pytest.mark.asyncio
    async def test_invite_unknown_organization(self, orgs, owner):
        with pytest.raises(NotFoundError):
            await orgs.invite_member("org_missing", "x@example.com", "member", owner.user_id)

    @pytest.mark.asyncio
    async def test_existing_member_cannot_be_invited(self, orgs, organization, owner):
        with pytest.raises(ConflictError):
            await orgs.invite_member(
                organization.organization_id, owner.email, "member", owner.user_id
            )

    @pytest.mark.asyncio
    async def test_email_failure_does_not_block_invite(
        self, store, organization, owner, monkeypatch
    ):
        notifier = EmailNotifier(enabled=True)

        def refuse(msg):
            raise smtplib.SMTPException("relay refused")

        monkeypatch.setattr(notifier, "_send_smtp", refuse)
        manager = OrganizationManager(store, notifier=notifier)

        invite, email_sent = await manager.invite_member(
            organization.organization_id, "x@example.com", "member", owner.user_id
        )
        assert email_sent is False
        assert store.get_invite(invite.invite_id) is not None

    @pytest.mark.asyncio
    async def test_email_sent_when_enabled(self, store, organization, owner, monkeypatch):
        notifier = EmailNotifier(enabled=True)
        sent = []
        monkeypatch.setattr(notifier, "_send_smtp", sent.append)
        manager = OrganizationManager(store, notifier=notifier)

        _, email_sent = await manager.invite_member(
            organization.organization_id, "x@example.com", "member", owner.user_id
        )
        assert email_sent is True
        assert sent[0]["To"] == "x@example.com"

    def test_accept_creates_membership(self, orgs, organization, make_user):
        invitee = make_user()
        token = _invite_token(orgs, organization, invitee.email, "admin")

        assert orgs.accept_invite(token, invitee.user_id)
        membership = orgs.get_membership(organization.organization_id, invitee.user_id)
        assert membership.role == "admin"

    def test_token_is_single_use(self, orgs, organization, make_user):
        first = make_user()
        second = make_user()
        token = _invite_token(orgs, organization, first.email)

        assert orgs.accept_invite(token, first.user_id)
        assert not orgs.accept_invite(token, second.user_id)
        assert orgs.get_membership(organization.organization_id, second.user_id) is None

    def test_expired_invite(self, orgs, organization, make_user):
        invitee = make_user()
        token = _invite_token(orgs, organization, invitee.email)
        later = utc_now() + timedelta(days=8)

        assert not orgs.accept_invite(token, invitee.user_id, now=later)
        assert orgs.list_pending_invites(organization.organization_id, now=later) == []

    def test_unknown_token(self, orgs, make_user):
        assert not orgs.accept_invite("no-such-token", make_user().user_id)

    def test_pending_and_cancel(self, orgs, organization, owner):
        token = _invite_token(orgs, organization, "pending@example.com")
        pending = orgs.list_pending_invites(organization.organization_id)
        assert [i.token for i in pending] == [token]

        invite_id = pending[0].invite_id
        assert not orgs.cancel_invite("org_other", invite_id)
        assert orgs.cancel_invite(organization.organization_id, invite_id, owner.user_id)
        assert orgs.list_pending_invites(organization.organization_id) == []


class TestMemberManagement:
    """Role changes and removal."""

    def test_admin_changes_member_role(self, orgs, organization, make_user):
        member = _join(orgs, organization, make_user())
        updated = orgs.update_member_role(
            organization.organization_id, member.member_id, "admin", actor_role="admin"
        )
        assert updated.role == "admin"

    def test_member_cannot_manage(self, orgs, organization, make_user):
        member = _join(orgs, organization, make_user())
        with pytest.raises(AuthorizationError):
            orgs.update_member_role(
                organization.organization_id, member.member_id, "admin", actor_role="member"
            )

    def test_only_owner_grants_owner(self, orgs, organization, make_user):
        member = _join(orgs, organization, make_user())
        with pytest.raises(AuthorizationError, match="Only owners"):
            orgs.update_member_role(
                organization.organization_id, member.member_id, "owner", actor_role="admin"
            )

        promoted = orgs.update_member_role(
            organization.organization_id, member.member_id, "owner", actor_role="owner"
        )
        assert promoted.role == "owner"

    def test_admin_cannot_touch_owner(self, orgs, organization):
        owner_member = organization.members[0]
        with pytest.raises(AuthorizationError):
            orgs.remove_member(
                organization.organization_id, owner_member.member_id, actor_role="admin"
            )

    def test_last_owner_cannot_be_demoted(self, orgs, organization):
        owner_member = organization.members[0]
        with pytest.raises(MembershipError):
            orgs.update_member_role(
                organization.organization_id, owner_member.member_id, "admin", actor_role="owner"
            )

    def test_last_owner_cannot_be_removed(self, orgs, organization):
        owner_member = organization.members[0]
        with pytest.raises(MembershipError):
            orgs.remove_member(
                organization.organization_id, owner_member.member_id, actor_role="owner"
            )

    def test_owner_can_step_down_with_co_owner(self, orgs, organization, make_user):
        co_owner = _join(orgs, organization, make_user())
        orgs.update_member_role(
            organization.organization_id, co_owner.member_id, "owner", actor_role="owner"
        )

        founder = organization.members[0]
        demoted = orgs.update_member_role(
            organization.organization_id, founder.member_id, "member", actor_role="owner"
        )
        assert demoted.role == "member"

    def test_remove_member(self, orgs, organization, make_user):
        user = make_user()
        member = _join(orgs, organization, user)
        assert orgs.remove_member(
            organization.organization_id, member.member_id, actor_role="admin"
        )
        assert orgs.get_membership(organization.organization_id, user.user_id) is None

    def test_member_of_other_organization(self, orgs, organization, make_user):
        other_owner = make_user()
        other = orgs.create_organization(other_owner.user_id, "Other", "other")
        with pytest.raises(NotFoundError):
            orgs.remove_member(
                organization.organization_id, other.members[0].member_id, actor_role="owner"
            )
