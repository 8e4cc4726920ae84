from __future__ import annotations

import uuid
from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import DataError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from partnerhub import audit, events
from partnerhub.authz.service import authorization_admin_service
from partnerhub.core.auth import ActorUser
from partnerhub.core.config import get_settings
from partnerhub.core.database import Base
from partnerhub.referrals.errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ProvisioningFailureError,
    TransitionFailedError,
)
from partnerhub.referrals.lifecycle import (
    LifecycleConfig,
    ProspectLifecycleEngine,
    parse_status_list,
    provision_client_fields,
)
from partnerhub.referrals.models import Client, Prospect, ProspectStatus
from partnerhub.referrals.notifications import PROSPECT_APPROVED_EVENT
from partnerhub.referrals.repositories import ClientRepository, ProspectRepository
from partnerhub.referrals.schemas import ClientCreate, ProspectCreate
from partnerhub.referrals.service import client_service, prospect_service


ADMIN = ActorUser(user_id="admin-1", role="admin")
MANAGER = ActorUser(user_id="manager-1", role=" Manager ")
PARTNER = ActorUser(user_id="partner-1", role="partner", partner_id="partner-1")

_FIRST_WEIGHTS = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_SECOND_WEIGHTS = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def _cnpj(seed: int) -> str:
    digits = f"{seed:08d}0001"
    for weights in (_FIRST_WEIGHTS, _SECOND_WEIGHTS):
        remainder = sum(int(digit) * weight for digit, weight in zip(digits, weights)) % 11
        digits += str(0 if remainder < 2 else 11 - remainder)
    return digits


class RecordingSink:
    name = "recording"

    def __init__(self) -> None:
        self.calls: list[tuple[uuid.UUID, bool]] = []

    def on_prospect_decided(self, prospect_id: uuid.UUID, is_approved: bool) -> None:
        self.calls.append((prospect_id, is_approved))


class FailingSink:
    name = "failing"

    def __init__(self) -> None:
        self.attempts = 0

    def on_prospect_decided(self, prospect_id: uuid.UUID, is_approved: bool) -> None:
        self.attempts += 1
        raise RuntimeError("smtp relay down")


class BrokenClientRepository(ClientRepository):
    def create_client(self, session: Session, fields: dict[str, Any], prospect_back_ref: uuid.UUID | None = None) -> Client:
        raise RuntimeError("client insert failed")


class RejectingStatusRepository(ProspectRepository):
    """Raises a database error for status writes into ``refused``."""

    def __init__(self, refused: set[str]) -> None:
        self.refused = refused

    def transition(
        self,
        session: Session,
        prospect: Prospect,
        *,
        from_status: str,
        to_status: str,
        changes: dict[str, Any] | None = None,
    ) -> bool:
        if to_status in self.refused:
            raise DataError("UPDATE referral_prospect", {}, Exception("value too long for column"))
        return super().transition(session, prospect, from_status=from_status, to_status=to_status, changes=changes)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    authorization_admin_service.seed_system_roles(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def engine(sink: RecordingSink) -> ProspectLifecycleEngine:
    return ProspectLifecycleEngine(notification_sink=sink)


def _submit(db_session: Session, *, tax_id: str = "11222333000181", email: str = "contato@acme.com.br") -> uuid.UUID:
    prospect = prospect_service.submit_prospect(
        db_session,
        PARTNER,
        ProspectCreate(
            company_name="Acme Ltda",
            contact_name="Maria Souza",
            email=email,
            phone="11987654321",
            tax_id=tax_id,
            employee_bucket="11-50",
            segment="technology",
        ),
    )
    assert prospect.status == ProspectStatus.PENDING
    return prospect.id


def _in_analysis(db_session: Session, engine: ProspectLifecycleEngine, **kwargs: str) -> uuid.UUID:
    prospect_id = _submit(db_session, **kwargs)
    engine.validate(db_session, ADMIN, prospect_id)
    engine.move_to_analysis(db_session, prospect_id)
    return prospect_id


def _status(db_session: Session, prospect_id: uuid.UUID) -> str:
    db_session.expire_all()
    prospect = db_session.get(Prospect, prospect_id)
    assert prospect is not None
    return prospect.status


def _clients_for(db_session: Session, prospect_id: uuid.UUID) -> list[Client]:
    return list(db_session.scalars(select(Client).where(Client.prospect_id == prospect_id)).all())


def _assert_client_invariants(db_session: Session) -> None:
    db_session.expire_all()
    for prospect in db_session.scalars(select(Prospect)).all():
        linked = _clients_for(db_session, prospect.id)
        if prospect.status == ProspectStatus.APPROVED:
            assert len(linked) == 1
        else:
            assert linked == []


def test_approve_provisions_exactly_one_client(
    db_session: Session,
    engine: ProspectLifecycleEngine,
    sink: RecordingSink,
) -> None:
    prospect_id = _submit(db_session)

    validated = engine.validate(db_session, ADMIN, prospect_id, notes="docs ok")
    assert validated.status == ProspectStatus.VALIDATED
    assert validated.validated_by == "admin-1"
    assert validated.validated_at is not None
    assert validated.validation_notes == "docs ok"

    in_analysis = engine.move_to_analysis(db_session, prospect_id)
    assert in_analysis.status == ProspectStatus.IN_ANALYSIS

    result = engine.decide(db_session, ADMIN, prospect_id, True, notes="welcome aboard")
    assert result.prospect.status == ProspectStatus.APPROVED
    assert result.prospect.is_approved is True
    assert result.prospect.decided_by == "admin-1"
    assert result.client_id is not None
    assert result.replayed is False

    clients = client_service.list_clients_for_prospect(db_session, ADMIN, prospect_id)
    assert len(clients) == 1
    client = clients[0]
    assert client.id == result.client_id
    assert client.tax_id == "11222333000181"
    assert client.name == "Acme Ltda"
    assert client.contact_name == "Maria Souza"
    assert client.partner_id == "partner-1"
    assert client.stage == "prospecting"
    assert client.temperature == "warm"
    assert client.total_lives == 1
    assert client.notes == "welcome aboard"

    assert sink.calls == [(prospect_id, True)]
    actions = [entry["action"] for entry in audit.entries_for("referrals.prospect", str(prospect_id))]
    assert actions == ["submit", "validate", "move_to_analysis", "approve"]
    _assert_client_invariants(db_session)


def test_row_version_increments_on_every_transition(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)

    assert engine.validate(db_session, ADMIN, prospect_id).row_version == 2
    assert engine.move_to_analysis(db_session, prospect_id).row_version == 3
    assert engine.decide(db_session, ADMIN, prospect_id, False).prospect.row_version == 4


def test_conflicting_tax_id_rolls_back_approval(
    db_session: Session,
    engine: ProspectLifecycleEngine,
    sink: RecordingSink,
) -> None:
    prospect_id = _in_analysis(db_session, engine)
    client_service.create_client(
        db_session,
        ADMIN,
        ClientCreate(name="Existing Co", email="finance@existing.com.br", tax_id="11222333000181"),
    )

    with pytest.raises(ConflictError) as exc_info:
        engine.decide(db_session, ADMIN, prospect_id, True)

    assert exc_info.value.fields == ["tax_id"]
    assert exc_info.value.status_code == 409
    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS
    assert _clients_for(db_session, prospect_id) == []
    assert sink.calls == []
    _assert_client_invariants(db_session)


def test_conflicting_email_is_named(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _in_analysis(db_session, engine)
    client_service.create_client(
        db_session,
        ADMIN,
        ClientCreate(name="Existing Co", email="contato@acme.com.br", tax_id=_cnpj(42)),
    )

    with pytest.raises(ConflictError) as exc_info:
        engine.decide(db_session, ADMIN, prospect_id, True)

    assert exc_info.value.fields == ["email"]
    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS


def test_partner_cannot_decide(db_session: Session, engine: ProspectLifecycleEngine, sink: RecordingSink) -> None:
    prospect_id = _in_analysis(db_session, engine)

    with pytest.raises(ForbiddenError) as exc_info:
        engine.decide(db_session, PARTNER, prospect_id, True)

    assert exc_info.value.details == {"role": "partner", "required": ["referrals.approve"]}
    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS
    assert _clients_for(db_session, prospect_id) == []
    assert sink.calls == []


def test_manager_validates_but_cannot_decide(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)

    engine.validate(db_session, MANAGER, prospect_id)
    engine.move_to_analysis(db_session, prospect_id, actor=MANAGER)
    with pytest.raises(ForbiddenError):
        engine.decide(db_session, MANAGER, prospect_id, False)

    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS


def test_partner_cannot_validate(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)

    with pytest.raises(ForbiddenError):
        engine.validate(db_session, PARTNER, prospect_id)
    with pytest.raises(ForbiddenError):
        engine.move_to_analysis(db_session, prospect_id, actor=PARTNER)

    assert _status(db_session, prospect_id) == ProspectStatus.PENDING


def test_reject_records_notes_without_client(
    db_session: Session,
    engine: ProspectLifecycleEngine,
    sink: RecordingSink,
) -> None:
    prospect_id = _in_analysis(db_session, engine)

    result = engine.decide(db_session, ADMIN, prospect_id, False, notes="duplicate")

    assert result.client_id is None
    assert result.prospect.status == ProspectStatus.REJECTED
    assert result.prospect.validation_notes == "duplicate"
    assert result.prospect.is_approved is False
    assert _clients_for(db_session, prospect_id) == []
    assert sink.calls == [(prospect_id, False)]


def test_reject_directly_from_pending(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)

    result = engine.decide(db_session, ADMIN, prospect_id, False)

    assert result.prospect.status == ProspectStatus.REJECTED


def test_approve_from_pending_needs_configured_entry_state(db_session: Session, sink: RecordingSink) -> None:
    default_engine = ProspectLifecycleEngine(notification_sink=sink)
    override_engine = ProspectLifecycleEngine(
        LifecycleConfig(decision_entry_states=parse_status_list("pending, validated, in-analysis")),
        notification_sink=sink,
    )
    prospect_id = _submit(db_session)

    with pytest.raises(InvalidTransitionError) as exc_info:
        default_engine.decide(db_session, ADMIN, prospect_id, True)
    assert exc_info.value.details == {"transition": "approve", "status": "pending"}
    assert _status(db_session, prospect_id) == ProspectStatus.PENDING

    result = override_engine.decide(db_session, ADMIN, prospect_id, True)
    assert result.prospect.status == ProspectStatus.APPROVED
    assert result.client_id is not None


def test_repeat_approval_returns_existing_client(
    db_session: Session,
    engine: ProspectLifecycleEngine,
    sink: RecordingSink,
) -> None:
    prospect_id = _in_analysis(db_session, engine)
    first = engine.decide(db_session, ADMIN, prospect_id, True)

    second = engine.decide(db_session, ADMIN, prospect_id, True)

    assert second.replayed is True
    assert second.client_id == first.client_id
    assert len(_clients_for(db_session, prospect_id)) == 1
    assert sink.calls == [(prospect_id, True)]


def test_repeat_rejection_is_a_no_op(db_session: Session, engine: ProspectLifecycleEngine, sink: RecordingSink) -> None:
    prospect_id = _in_analysis(db_session, engine)
    engine.decide(db_session, ADMIN, prospect_id, False)

    again = engine.decide(db_session, ADMIN, prospect_id, False)

    assert again.replayed is True
    assert again.client_id is None
    assert len(sink.calls) == 1


def test_contradicting_decisions_are_invalid(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    approved_id = _in_analysis(db_session, engine)
    rejected_id = _in_analysis(db_session, engine, tax_id=_cnpj(7), email="hello@other.com.br")
    engine.decide(db_session, ADMIN, approved_id, True)
    engine.decide(db_session, ADMIN, rejected_id, False)

    with pytest.raises(InvalidTransitionError):
        engine.decide(db_session, ADMIN, approved_id, False)
    with pytest.raises(InvalidTransitionError):
        engine.decide(db_session, ADMIN, rejected_id, True)

    assert _status(db_session, approved_id) == ProspectStatus.APPROVED
    assert _status(db_session, rejected_id) == ProspectStatus.REJECTED
    _assert_client_invariants(db_session)


def test_validate_and_move_only_from_their_source_status(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)

    with pytest.raises(InvalidTransitionError):
        engine.move_to_analysis(db_session, prospect_id)

    engine.validate(db_session, ADMIN, prospect_id)
    with pytest.raises(InvalidTransitionError):
        engine.validate(db_session, ADMIN, prospect_id)

    engine.move_to_analysis(db_session, prospect_id)
    with pytest.raises(InvalidTransitionError):
        engine.move_to_analysis(db_session, prospect_id)
    with pytest.raises(InvalidTransitionError):
        engine.validate(db_session, ADMIN, prospect_id)

    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS


def test_validated_prospect_cannot_be_decided_by_default(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    prospect_id = _submit(db_session)
    engine.validate(db_session, ADMIN, prospect_id)

    with pytest.raises(InvalidTransitionError):
        engine.decide(db_session, ADMIN, prospect_id, True)
    with pytest.raises(InvalidTransitionError):
        engine.decide(db_session, ADMIN, prospect_id, False)


def test_unknown_prospect_is_not_found(db_session: Session, engine: ProspectLifecycleEngine) -> None:
    missing = uuid.uuid4()

    with pytest.raises(NotFoundError) as exc_info:
        engine.decide(db_session, ADMIN, missing, True)
    assert exc_info.value.details == {"entity": "prospect", "id": str(missing)}

    with pytest.raises(NotFoundError):
        engine.validate(db_session, ADMIN, missing)


def test_provisioning_failure_rolls_back(db_session: Session, sink: RecordingSink) -> None:
    engine = ProspectLifecycleEngine(notification_sink=sink, clients=BrokenClientRepository())
    prospect_id = _in_analysis(db_session, engine)

    with pytest.raises(ProvisioningFailureError) as exc_info:
        engine.decide(db_session, ADMIN, prospect_id, True)

    assert exc_info.value.status_code == 500
    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS
    assert db_session.scalar(select(func.count()).select_from(Client)) == 0
    assert sink.calls == []


def test_database_error_on_reject_rolls_back_as_transition_failure(db_session: Session, sink: RecordingSink) -> None:
    engine = ProspectLifecycleEngine(
        notification_sink=sink,
        prospects=RejectingStatusRepository({ProspectStatus.REJECTED.value}),
    )
    prospect_id = _in_analysis(db_session, engine)

    with pytest.raises(TransitionFailedError) as exc_info:
        engine.decide(db_session, ADMIN, prospect_id, False, notes="duplicate")

    assert exc_info.value.status_code == 500
    assert exc_info.value.details == {"prospect_id": str(prospect_id), "transition": "reject"}
    assert _status(db_session, prospect_id) == ProspectStatus.IN_ANALYSIS
    assert sink.calls == []


def test_database_error_on_validate_rolls_back_as_transition_failure(db_session: Session) -> None:
    engine = ProspectLifecycleEngine(
        notification_sink=RecordingSink(),
        prospects=RejectingStatusRepository({ProspectStatus.VALIDATED.value}),
    )
    prospect_id = _submit(db_session)

    with pytest.raises(TransitionFailedError) as exc_info:
        engine.validate(db_session, ADMIN, prospect_id)

    assert exc_info.value.code == "transition_failed"
    assert _status(db_session, prospect_id) == ProspectStatus.PENDING
    actions = [entry["action"] for entry in audit.entries_for(audit.PROSPECT_ENTITY, str(prospect_id))]
    assert "validate" not in actions


def test_notification_failure_does_not_undo_decision(db_session: Session) -> None:
    failing = FailingSink()
    engine = ProspectLifecycleEngine(LifecycleConfig(notification_max_attempts=3), notification_sink=failing)
    prospect_id = _in_analysis(db_session, engine)

    result = engine.decide(db_session, ADMIN, prospect_id, True)

    assert result.prospect.status == ProspectStatus.APPROVED
    assert failing.attempts == 3
    assert _status(db_session, prospect_id) == ProspectStatus.APPROVED
    assert len(_clients_for(db_session, prospect_id)) == 1


def test_default_sink_publishes_decision_event(db_session: Session) -> None:
    engine = ProspectLifecycleEngine()
    prospect_id = _in_analysis(db_session, engine)

    engine.decide(db_session, ADMIN, prospect_id, True)

    approved = [item for item in events.published_events if item["event_type"] == PROSPECT_APPROVED_EVENT]
    assert len(approved) == 1
    assert approved[0]["payload"] == {"prospect_id": str(prospect_id), "is_approved": True}


def test_lifecycle_config_rejects_terminal_entry_states() -> None:
    with pytest.raises(ValueError):
        LifecycleConfig(decision_entry_states=frozenset({ProspectStatus.APPROVED}))
    with pytest.raises(ValueError):
        LifecycleConfig(decision_entry_states=frozenset())

    config = LifecycleConfig()
    assert config.allowed_targets(ProspectStatus.IN_ANALYSIS) == {ProspectStatus.APPROVED, ProspectStatus.REJECTED}
    assert config.allowed_targets(ProspectStatus.PENDING) == {ProspectStatus.VALIDATED, ProspectStatus.REJECTED}
    assert config.allowed_targets(ProspectStatus.APPROVED) == frozenset()


def test_lifecycle_config_reads_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFERRALS_DECISION_ENTRY_STATES", "validated,in-analysis")
    monkeypatch.setenv("REFERRALS_NOTIFICATION_MAX_ATTEMPTS", "5")
    get_settings.cache_clear()

    config = LifecycleConfig.from_settings(get_settings())

    assert config.decision_entry_states == {ProspectStatus.VALIDATED, ProspectStatus.IN_ANALYSIS}
    assert config.notification_max_attempts == 5


def test_client_fields_fall_back_to_company_name() -> None:
    prospect = Prospect(
        company_name="Solo Ltda",
        contact_name=None,
        email="solo@solo.com.br",
        phone="11987654321",
        tax_id="11444777000161",
        segment="services",
        partner_id="partner-9",
    )

    fields = provision_client_fields(prospect, None)

    assert fields["name"] == "Solo Ltda"
    assert fields["contact_name"] == "Solo Ltda"
    assert fields["tax_id"] == "11444777000161"
    assert fields["partner_id"] == "partner-9"
    assert fields["status"] == "active"
