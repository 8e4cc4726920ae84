from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from partnerhub.referrals.errors import ConflictError
from partnerhub.referrals.models import Client, Prospect, ProspectStatus, utcnow


class ProspectRepository:
    """Data access for prospects. Callers own the transaction."""

    def get(self, session: Session, prospect_id: uuid.UUID) -> Prospect | None:
        return session.scalar(select(Prospect).where(Prospect.id == prospect_id))

    def get_for_update(self, session: Session, prospect_id: uuid.UUID) -> Prospect | None:
        # populate_existing so a row cached before the lock is re-read under it.
        return session.scalar(
            select(Prospect)
            .where(Prospect.id == prospect_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def find_active_duplicate(
        self,
        session: Session,
        email: str,
        tax_id: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> Prospect | None:
        stmt = select(Prospect).where(
            and_(
                Prospect.email == email,
                Prospect.tax_id == tax_id,
                Prospect.status != ProspectStatus.REJECTED.value,
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(Prospect.id != exclude_id)
        return session.scalar(stmt.limit(1))

    def add(self, session: Session, prospect: Prospect) -> Prospect:
        session.add(prospect)
        return prospect

    def update_fields(self, session: Session, prospect: Prospect, changes: dict[str, Any]) -> bool:
        return self._guarded_update(
            session,
            prospect,
            Prospect.row_version == prospect.row_version,
            changes,
        )

    def transition(
        self,
        session: Session,
        prospect: Prospect,
        *,
        from_status: str,
        to_status: str,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        """Compare-and-set the status; False means another writer moved the row first."""

        values = dict(changes or {})
        values["status"] = to_status
        return self._guarded_update(
            session,
            prospect,
            and_(Prospect.status == from_status, Prospect.row_version == prospect.row_version),
            values,
        )

    @staticmethod
    def _guarded_update(session: Session, prospect: Prospect, guard: Any, changes: dict[str, Any]) -> bool:
        values = dict(changes)
        values["updated_at"] = utcnow()
        values["row_version"] = Prospect.row_version + 1
        result = session.execute(
            update(Prospect).where(and_(Prospect.id == prospect.id, guard)).values(**values)
        )
        if result.rowcount == 0:
            return False
        session.refresh(prospect)
        return True


class ClientRepository:
    """Data access for clients. Callers own the transaction."""

    def get(self, session: Session, client_id: uuid.UUID) -> Client | None:
        return session.scalar(select(Client).where(Client.id == client_id))

    def list_by_prospect(self, session: Session, prospect_id: uuid.UUID) -> list[Client]:
        return list(session.scalars(select(Client).where(Client.prospect_id == prospect_id)).all())

    def get_by_prospect(self, session: Session, prospect_id: uuid.UUID) -> Client | None:
        return session.scalar(select(Client).where(Client.prospect_id == prospect_id))

    def find_conflicting_fields(self, session: Session, *, email: str | None, tax_id: str | None) -> list[str]:
        conditions = []
        if email:
            conditions.append(Client.email == email)
        if tax_id:
            conditions.append(Client.tax_id == tax_id)
        if not conditions:
            return []

        fields: list[str] = []
        for row in session.scalars(select(Client).where(or_(*conditions))).all():
            if email and row.email == email and "email" not in fields:
                fields.append("email")
            if tax_id and row.tax_id == tax_id and "tax_id" not in fields:
                fields.append("tax_id")
        return fields

    def create_client(
        self,
        session: Session,
        fields: dict[str, Any],
        prospect_back_ref: uuid.UUID | None = None,
    ) -> Client:
        """Insert a client inside the caller's transaction.

        Raises ``ConflictError`` for duplicate email, tax ID or prospect
        back-reference; the caller must roll back.
        """

        conflicts = self.find_conflicting_fields(session, email=fields.get("email"), tax_id=fields.get("tax_id"))
        if conflicts:
            raise ConflictError(
                f"client already exists with the same {' and '.join(conflicts)}",
                fields=conflicts,
            )

        client = Client(**fields, prospect_id=prospect_back_ref)
        session.add(client)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ConflictError("client uniqueness constraint violated", fields=[]) from exc
        return client


prospect_repository = ProspectRepository()
client_repository = ClientRepository()
