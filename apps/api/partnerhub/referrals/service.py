from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from partnerhub import audit
from partnerhub.authz.permissions import (
    CLIENTS_CREATE,
    CLIENTS_VIEW,
    REFERRALS_CREATE,
    REFERRALS_VALIDATE,
    REFERRALS_VIEW,
    PermissionModel,
)
from partnerhub.core.auth import ActorUser
from partnerhub.core.errors import DomainError
from partnerhub.referrals.errors import ConflictError, InvalidTransitionError, NotFoundError, StoreUnavailableError
from partnerhub.referrals.models import Prospect, ProspectStatus
from partnerhub.referrals.repositories import (
    ClientRepository,
    ProspectRepository,
    client_repository,
    prospect_repository,
)
from partnerhub.referrals.schemas import (
    PROSPECT_MUTABLE_FIELDS,
    ClientCreate,
    ClientRead,
    ProspectCreate,
    ProspectRead,
    ProspectUpdate,
)


logger = logging.getLogger("partnerhub.referrals")


class _ReferralService:
    def __init__(
        self,
        *,
        prospects: ProspectRepository = prospect_repository,
        clients: ClientRepository = client_repository,
        permission_model_factory: Callable[[Session], PermissionModel] = PermissionModel.for_session,
    ) -> None:
        self._prospects = prospects
        self._clients = clients
        self._permission_model_factory = permission_model_factory

    def _authorize(self, session: Session, actor: ActorUser, *tokens: str) -> None:
        self._permission_model_factory(session).require(actor.role, list(tokens))

    @staticmethod
    def _commit(session: Session, conflict_message: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(conflict_message) from exc
        except OperationalError as exc:
            session.rollback()
            raise StoreUnavailableError("prospect store unavailable") from exc


class ProspectService(_ReferralService):
    entity_type = audit.PROSPECT_ENTITY

    def submit_prospect(self, session: Session, actor: ActorUser, dto: ProspectCreate) -> ProspectRead:
        self._authorize(session, actor, REFERRALS_CREATE)

        partner_id = actor.partner_id or dto.partner_id or actor.user_id
        duplicate = self._prospects.find_active_duplicate(session, dto.email, dto.tax_id)
        if duplicate is not None:
            session.rollback()
            raise ConflictError(
                "an active prospect with this email and tax_id already exists",
                fields=["email", "tax_id"],
                details={"fields": ["email", "tax_id"], "prospect_id": str(duplicate.id)},
            )

        prospect = Prospect(
            company_name=dto.company_name,
            contact_name=dto.contact_name or None,
            email=dto.email,
            phone=dto.phone,
            tax_id=dto.tax_id,
            employee_bucket=dto.employee_bucket.value if dto.employee_bucket else None,
            segment=dto.segment.value,
            partner_id=partner_id,
            status=ProspectStatus.PENDING.value,
        )
        self._prospects.add(session, prospect)
        self._commit(session, "an active prospect with this email and tax_id already exists")
        session.refresh(prospect)

        logger.info("referrals.prospect_submitted", extra={"prospect_id": str(prospect.id), "role": actor.role})
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=str(prospect.id),
            action="submit",
            before=None,
            after={"status": prospect.status, "partner_id": prospect.partner_id},
            correlation_id=actor.correlation_id,
        )
        return ProspectRead.model_validate(prospect)

    def get_prospect(self, session: Session, actor: ActorUser, prospect_id: uuid.UUID) -> ProspectRead:
        self._authorize(session, actor, REFERRALS_VIEW)
        prospect = self._prospects.get(session, prospect_id)
        if prospect is None or not self._can_view(actor, prospect):
            raise NotFoundError("prospect", prospect_id)
        return ProspectRead.model_validate(prospect)

    def edit_prospect(
        self,
        session: Session,
        actor: ActorUser,
        prospect_id: uuid.UUID,
        dto: ProspectUpdate,
    ) -> ProspectRead:
        """Correct non-status fields; allowed in every status, terminal ones included."""

        self._authorize(session, actor, REFERRALS_VALIDATE)
        prospect = self._prospects.get_for_update(session, prospect_id)
        if prospect is None:
            session.rollback()
            raise NotFoundError("prospect", prospect_id)

        changes: dict[str, Any] = {}
        for name in dto.model_fields_set & PROSPECT_MUTABLE_FIELDS:
            value = getattr(dto, name)
            if name in {"company_name", "email", "phone", "tax_id", "segment"} and value is None:
                continue
            changes[name] = value.value if isinstance(value, StrEnum) else value
        if not changes:
            session.rollback()
            return ProspectRead.model_validate(prospect)

        email = changes.get("email", prospect.email)
        tax_id = changes.get("tax_id", prospect.tax_id)
        if ("email" in changes or "tax_id" in changes) and prospect.status != ProspectStatus.REJECTED:
            duplicate = self._prospects.find_active_duplicate(session, email, tax_id, exclude_id=prospect.id)
            if duplicate is not None:
                session.rollback()
                raise ConflictError(
                    "an active prospect with this email and tax_id already exists",
                    fields=["email", "tax_id"],
                )

        before = {name: getattr(prospect, name) for name in changes}
        try:
            if not self._prospects.update_fields(session, prospect, changes):
                raise InvalidTransitionError("edit", prospect.status, reason="prospect changed during edit")
        except DomainError:
            session.rollback()
            raise
        self._commit(session, "an active prospect with this email and tax_id already exists")

        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=str(prospect_id),
            action="edit",
            before=before,
            after=changes,
            correlation_id=actor.correlation_id,
        )
        return ProspectRead.model_validate(self._prospects.get(session, prospect_id))

    @staticmethod
    def _can_view(actor: ActorUser, prospect: Prospect) -> bool:
        return actor.partner_id is None or actor.partner_id == prospect.partner_id


class ClientService(_ReferralService):
    entity_type = audit.CLIENT_ENTITY

    def create_client(self, session: Session, actor: ActorUser, dto: ClientCreate) -> ClientRead:
        """Operator-created client; never carries a prospect back-reference."""

        self._authorize(session, actor, CLIENTS_CREATE)
        fields = dto.model_dump()
        for name in ("status", "stage", "temperature"):
            fields[name] = fields[name].value
        try:
            client = self._clients.create_client(session, fields, prospect_back_ref=None)
        except DomainError:
            session.rollback()
            raise
        self._commit(session, "client already exists")
        session.refresh(client)

        audit.record(
            actor_user_id=actor.user_id,
            entity_type=self.entity_type,
            entity_id=str(client.id),
            action="create",
            before=None,
            after={"tax_id": client.tax_id, "email": client.email},
            correlation_id=actor.correlation_id,
        )
        return ClientRead.model_validate(client)

    def get_client(self, session: Session, actor: ActorUser, client_id: uuid.UUID) -> ClientRead:
        self._authorize(session, actor, CLIENTS_VIEW)
        client = self._clients.get(session, client_id)
        if client is None or (actor.partner_id is not None and client.partner_id != actor.partner_id):
            raise NotFoundError("client", client_id)
        return ClientRead.model_validate(client)

    def list_clients_for_prospect(self, session: Session, actor: ActorUser, prospect_id: uuid.UUID) -> list[ClientRead]:
        self._authorize(session, actor, CLIENTS_VIEW)
        rows = self._clients.list_by_prospect(session, prospect_id)
        return [
            ClientRead.model_validate(row)
            for row in rows
            if actor.partner_id is None or row.partner_id == actor.partner_id
        ]


prospect_service = ProspectService()
client_service = ClientService()
