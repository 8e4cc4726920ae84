"""Prospect status state machine and the approve-and-provision transaction.

Every public method takes the caller's ``Session`` and either commits a single
transaction or rolls it back completely before raising. The engine keeps no
per-call state, so one instance can serve every worker thread.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from partnerhub import audit
from partnerhub.authz.permissions import REFERRALS_APPROVE, REFERRALS_VALIDATE, PermissionModel
from partnerhub.core.auth import ActorUser
from partnerhub.core.config import Settings
from partnerhub.core.errors import DomainError
from partnerhub.metrics import (
    observe_client_provisioned,
    observe_decision_duration,
    observe_transition,
)
from partnerhub.referrals.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningFailureError,
    StoreUnavailableError,
    TransitionFailedError,
)
from partnerhub.referrals.models import (
    ClientStage,
    ClientStatus,
    ClientTemperature,
    Prospect,
    ProspectStatus,
    utcnow,
)
from partnerhub.referrals.notifications import EventBusNotificationSink, NotificationSink, dispatch_decision
from partnerhub.referrals.repositories import (
    ClientRepository,
    ProspectRepository,
    client_repository,
    prospect_repository,
)
from partnerhub.referrals.schemas import ProspectRead


logger = logging.getLogger("partnerhub.referrals.lifecycle")
tracer = trace.get_tracer("partnerhub.referrals.lifecycle")

TERMINAL_STATUSES: frozenset[ProspectStatus] = frozenset({ProspectStatus.APPROVED, ProspectStatus.REJECTED})

# Approval edges are not listed here; they come from LifecycleConfig.decision_entry_states.
BASE_TRANSITIONS: dict[ProspectStatus, frozenset[ProspectStatus]] = {
    ProspectStatus.PENDING: frozenset({ProspectStatus.VALIDATED, ProspectStatus.REJECTED}),
    ProspectStatus.VALIDATED: frozenset({ProspectStatus.IN_ANALYSIS}),
    ProspectStatus.IN_ANALYSIS: frozenset({ProspectStatus.REJECTED}),
    ProspectStatus.APPROVED: frozenset(),
    ProspectStatus.REJECTED: frozenset(),
}

DEFAULT_CLIENT_STAGE = ClientStage.PROSPECTING
DEFAULT_CLIENT_TEMPERATURE = ClientTemperature.WARM
DEFAULT_CLIENT_TOTAL_LIVES = 1


def parse_status_list(raw: str | Iterable[str]) -> frozenset[ProspectStatus]:
    values = raw.split(",") if isinstance(raw, str) else list(raw)
    return frozenset(ProspectStatus(value.strip()) for value in values if value.strip())


@dataclass(frozen=True)
class LifecycleConfig:
    decision_entry_states: frozenset[ProspectStatus] = frozenset({ProspectStatus.IN_ANALYSIS})
    notification_max_attempts: int = 3
    lock_timeout_ms: int = 5000

    def __post_init__(self) -> None:
        terminal = self.decision_entry_states & TERMINAL_STATUSES
        if terminal:
            raise ValueError(f"decision entry states cannot be terminal: {', '.join(sorted(terminal))}")
        if not self.decision_entry_states:
            raise ValueError("at least one decision entry state is required")

    @classmethod
    def from_settings(cls, settings: Settings) -> LifecycleConfig:
        return cls(
            decision_entry_states=parse_status_list(settings.referrals_decision_entry_states),
            notification_max_attempts=settings.referrals_notification_max_attempts,
            lock_timeout_ms=settings.database_lock_timeout_ms,
        )

    def allowed_targets(self, current: ProspectStatus) -> frozenset[ProspectStatus]:
        targets = BASE_TRANSITIONS[current]
        if current in self.decision_entry_states:
            targets = targets | {ProspectStatus.APPROVED, ProspectStatus.REJECTED}
        return targets


@dataclass
class DecisionResult:
    prospect: ProspectRead
    client_id: uuid.UUID | None = None
    replayed: bool = False


@dataclass
class _TransitionPlan:
    name: str
    target: ProspectStatus
    required: list[str] = field(default_factory=list)


def provision_client_fields(prospect: Prospect, notes: str | None) -> dict[str, Any]:
    return {
        "name": prospect.company_name,
        "contact_name": prospect.contact_name or prospect.company_name,
        "email": prospect.email,
        "phone": prospect.phone,
        "tax_id": prospect.tax_id,
        "status": ClientStatus.ACTIVE.value,
        "stage": DEFAULT_CLIENT_STAGE.value,
        "temperature": DEFAULT_CLIENT_TEMPERATURE.value,
        "total_lives": DEFAULT_CLIENT_TOTAL_LIVES,
        "partner_id": prospect.partner_id,
        "notes": notes,
    }


class ProspectLifecycleEngine:
    def __init__(
        self,
        config: LifecycleConfig | None = None,
        *,
        notification_sink: NotificationSink | None = None,
        prospects: ProspectRepository = prospect_repository,
        clients: ClientRepository = client_repository,
        permission_model_factory: Callable[[Session], PermissionModel] = PermissionModel.for_session,
    ) -> None:
        self._config = config or LifecycleConfig()
        self._sink = notification_sink or EventBusNotificationSink()
        self._prospects = prospects
        self._clients = clients
        self._permission_model_factory = permission_model_factory

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    def validate(
        self,
        session: Session,
        actor: ActorUser,
        prospect_id: uuid.UUID,
        notes: str | None = None,
    ) -> ProspectRead:
        plan = _TransitionPlan("validate", ProspectStatus.VALIDATED, [REFERRALS_VALIDATE])

        def changes() -> dict[str, Any]:
            values: dict[str, Any] = {"validated_by": actor.user_id, "validated_at": utcnow()}
            if notes is not None:
                values["validation_notes"] = notes
            return values

        return self._apply_status_transition(session, actor, prospect_id, plan, changes)

    def move_to_analysis(
        self,
        session: Session,
        prospect_id: uuid.UUID,
        actor: ActorUser | None = None,
    ) -> ProspectRead:
        """Move a validated prospect into analysis; ``actor=None`` is the system trigger."""

        required = [REFERRALS_VALIDATE] if actor is not None else []
        plan = _TransitionPlan("move_to_analysis", ProspectStatus.IN_ANALYSIS, required)
        return self._apply_status_transition(session, actor, prospect_id, plan, dict)

    def decide(
        self,
        session: Session,
        actor: ActorUser,
        prospect_id: uuid.UUID,
        is_approved: bool,
        notes: str | None = None,
    ) -> DecisionResult:
        transition = "approve" if is_approved else "reject"
        target = ProspectStatus.APPROVED if is_approved else ProspectStatus.REJECTED
        started = time.perf_counter()

        with tracer.start_as_current_span("referrals.decide") as span:
            span.set_attribute("prospect_id", str(prospect_id))
            span.set_attribute("referrals.transition", transition)
            try:
                self._authorize(session, actor, [REFERRALS_APPROVE])
                self._apply_lock_timeout(session)
                prospect = self._lock_prospect(session, prospect_id)
                from_status = ProspectStatus(prospect.status)

                replay = self._replay_decision(session, prospect, is_approved)
                if replay is not None:
                    session.commit()
                    span.set_attribute("referrals.replayed", True)
                    observe_transition(transition, "replayed")
                    logger.info(
                        "referrals.decision_replayed",
                        extra={"prospect_id": str(prospect_id), "transition": transition},
                    )
                    return replay

                self._ensure_allowed(transition, from_status, target)
                changes: dict[str, Any] = {
                    "is_approved": is_approved,
                    "decided_by": actor.user_id,
                    "decided_at": utcnow(),
                }
                if notes is not None:
                    changes["validation_notes"] = notes
                if not self._prospects.transition(
                    session,
                    prospect,
                    from_status=from_status.value,
                    to_status=target.value,
                    changes=changes,
                ):
                    raise InvalidTransitionError(transition, from_status.value, reason="prospect changed during decision")

                client_id = self._provision_client(session, prospect, notes) if is_approved else None
                result = DecisionResult(prospect=ProspectRead.model_validate(prospect), client_id=client_id)
                session.commit()
            except DomainError as exc:
                session.rollback()
                self._record_failure(transition, prospect_id, exc)
                raise
            except IntegrityError as exc:
                session.rollback()
                error = ConflictError("decision conflicts with existing data", fields=[])
                self._record_failure(transition, prospect_id, error)
                raise error from exc
            except OperationalError as exc:
                session.rollback()
                error = StoreUnavailableError("prospect store unavailable")
                self._record_failure(transition, prospect_id, error)
                raise error from exc
            except SQLAlchemyError as exc:
                session.rollback()
                error: DomainError
                if is_approved:
                    error = ProvisioningFailureError(
                        "client provisioning failed",
                        details={"prospect_id": str(prospect_id)},
                    )
                else:
                    error = TransitionFailedError(
                        "prospect decision could not be stored",
                        details={"prospect_id": str(prospect_id), "transition": transition},
                    )
                self._record_failure(transition, prospect_id, error)
                raise error from exc

            if client_id is not None:
                span.set_attribute("client_id", str(client_id))

        observe_decision_duration(transition, time.perf_counter() - started)
        observe_transition(transition, "ok")
        if client_id is not None:
            observe_client_provisioned()
        logger.info(
            "referrals.prospect_decided",
            extra={
                "prospect_id": str(prospect_id),
                "client_id": str(client_id) if client_id else None,
                "transition": transition,
                "from_status": from_status.value,
                "to_status": target.value,
            },
        )
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=audit.PROSPECT_ENTITY,
            entity_id=str(prospect_id),
            action=transition,
            before={"status": from_status.value},
            after={"status": target.value, "client_id": str(client_id) if client_id else None},
            correlation_id=actor.correlation_id,
        )
        dispatch_decision(
            self._sink,
            prospect_id,
            is_approved,
            max_attempts=self._config.notification_max_attempts,
        )
        return result

    def _apply_status_transition(
        self,
        session: Session,
        actor: ActorUser | None,
        prospect_id: uuid.UUID,
        plan: _TransitionPlan,
        changes_factory: Callable[[], dict[str, Any]],
    ) -> ProspectRead:
        with tracer.start_as_current_span(f"referrals.{plan.name}") as span:
            span.set_attribute("prospect_id", str(prospect_id))
            try:
                if plan.required:
                    self._authorize(session, actor, plan.required)
                self._apply_lock_timeout(session)
                prospect = self._lock_prospect(session, prospect_id)
                from_status = ProspectStatus(prospect.status)
                self._ensure_allowed(plan.name, from_status, plan.target)
                if not self._prospects.transition(
                    session,
                    prospect,
                    from_status=from_status.value,
                    to_status=plan.target.value,
                    changes=changes_factory(),
                ):
                    raise InvalidTransitionError(plan.name, from_status.value, reason="prospect changed during transition")
                result = ProspectRead.model_validate(prospect)
                session.commit()
            except DomainError as exc:
                session.rollback()
                self._record_failure(plan.name, prospect_id, exc)
                raise
            except OperationalError as exc:
                session.rollback()
                error = StoreUnavailableError("prospect store unavailable")
                self._record_failure(plan.name, prospect_id, error)
                raise error from exc
            except SQLAlchemyError as exc:
                session.rollback()
                error = TransitionFailedError(
                    "prospect status could not be stored",
                    details={"prospect_id": str(prospect_id), "transition": plan.name},
                )
                self._record_failure(plan.name, prospect_id, error)
                raise error from exc

        observe_transition(plan.name, "ok")
        actor_user_id = actor.user_id if actor is not None else "system"
        logger.info(
            "referrals.prospect_transitioned",
            extra={
                "prospect_id": str(prospect_id),
                "transition": plan.name,
                "from_status": from_status.value,
                "to_status": plan.target.value,
            },
        )
        audit.record(
            actor_user_id=actor_user_id,
            entity_type=audit.PROSPECT_ENTITY,
            entity_id=str(prospect_id),
            action=plan.name,
            before={"status": from_status.value},
            after={"status": plan.target.value},
            correlation_id=actor.correlation_id if actor is not None else None,
        )
        return result

    def _authorize(self, session: Session, actor: ActorUser | None, tokens: list[str]) -> None:
        # A missing actor has no role, so any required token is forbidden.
        role = actor.role if actor is not None else None
        self._permission_model_factory(session).require(role, tokens)

    def _apply_lock_timeout(self, session: Session) -> None:
        # SQLite gets its busy timeout from the engine's connect_args.
        if session.get_bind().dialect.name != "postgresql":
            return
        timeout_ms = int(self._config.lock_timeout_ms)
        session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _lock_prospect(self, session: Session, prospect_id: uuid.UUID) -> Prospect:
        prospect = self._prospects.get_for_update(session, prospect_id)
        if prospect is None:
            raise NotFoundError("prospect", prospect_id)
        return prospect

    def _ensure_allowed(self, transition: str, current: ProspectStatus, target: ProspectStatus) -> None:
        if target not in self._config.allowed_targets(current):
            raise InvalidTransitionError(transition, current.value)

    def _replay_decision(self, session: Session, prospect: Prospect, is_approved: bool) -> DecisionResult | None:
        """Return the recorded outcome when the same decision is requested again."""

        if prospect.status == ProspectStatus.APPROVED and is_approved:
            client = self._clients.get_by_prospect(session, prospect.id)
            if client is None:
                raise InvalidTransitionError("approve", prospect.status, reason="approved prospect has no linked client")
            return DecisionResult(prospect=ProspectRead.model_validate(prospect), client_id=client.id, replayed=True)
        if prospect.status == ProspectStatus.REJECTED and not is_approved:
            return DecisionResult(prospect=ProspectRead.model_validate(prospect), replayed=True)
        return None

    def _provision_client(self, session: Session, prospect: Prospect, notes: str | None) -> uuid.UUID:
        try:
            client = self._clients.create_client(
                session,
                provision_client_fields(prospect, notes),
                prospect_back_ref=prospect.id,
            )
        except (ConflictError, OperationalError):
            raise
        except Exception as exc:
            raise ProvisioningFailureError(
                "client provisioning failed",
                details={"prospect_id": str(prospect.id)},
            ) from exc
        return client.id

    @staticmethod
    def _record_failure(transition: str, prospect_id: uuid.UUID, error: DomainError) -> None:
        observe_transition(transition, error.code)
        log = logger.error if error.status_code >= 500 else logger.info
        log(
            "referrals.transition_failed",
            extra={"prospect_id": str(prospect_id), "transition": transition, "error": error.code},
        )
