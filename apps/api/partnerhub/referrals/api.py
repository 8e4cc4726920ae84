from __future__ import annotations

import uuid
from functools import lru_cache

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from partnerhub.api.errors import domain_error_response
from partnerhub.core.auth import ActorUser, get_current_actor
from partnerhub.core.config import get_settings
from partnerhub.core.database import get_db
from partnerhub.core.errors import DomainError
from partnerhub.referrals.lifecycle import LifecycleConfig, ProspectLifecycleEngine
from partnerhub.referrals.schemas import (
    ClientCreate,
    ClientRead,
    DecideProspectRequest,
    DecisionRead,
    ProspectCreate,
    ProspectRead,
    ProspectUpdate,
    ValidateProspectRequest,
)
from partnerhub.referrals.service import client_service, prospect_service


prospects_router = APIRouter(prefix="/api/referrals", tags=["referrals.prospects"])
clients_router = APIRouter(prefix="/api/referrals", tags=["referrals.clients"])


@lru_cache
def get_lifecycle_engine() -> ProspectLifecycleEngine:
    return ProspectLifecycleEngine(LifecycleConfig.from_settings(get_settings()))


@prospects_router.post("/prospects", response_model=ProspectRead, status_code=status.HTTP_201_CREATED)
def submit_prospect(
    request: Request,
    dto: ProspectCreate,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.submit_prospect(db, actor, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@prospects_router.get("/prospects/{prospect_id}", response_model=ProspectRead)
def get_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.get_prospect(db, actor, prospect_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@prospects_router.patch("/prospects/{prospect_id}", response_model=ProspectRead)
def edit_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    dto: ProspectUpdate,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> ProspectRead | JSONResponse:
    try:
        return prospect_service.edit_prospect(db, actor, prospect_id, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@prospects_router.post("/prospects/{prospect_id}/validate", response_model=ProspectRead)
def validate_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    dto: ValidateProspectRequest | None = None,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
    engine: ProspectLifecycleEngine = Depends(get_lifecycle_engine),
) -> ProspectRead | JSONResponse:
    try:
        return engine.validate(db, actor, prospect_id, notes=dto.notes if dto else None)
    except DomainError as exc:
        return domain_error_response(request, exc)


@prospects_router.post("/prospects/{prospect_id}/analysis", response_model=ProspectRead)
def move_prospect_to_analysis(
    request: Request,
    prospect_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
    engine: ProspectLifecycleEngine = Depends(get_lifecycle_engine),
) -> ProspectRead | JSONResponse:
    try:
        return engine.move_to_analysis(db, prospect_id, actor=actor)
    except DomainError as exc:
        return domain_error_response(request, exc)


@prospects_router.post("/prospects/{prospect_id}/decision", response_model=DecisionRead)
def decide_prospect(
    request: Request,
    prospect_id: uuid.UUID,
    dto: DecideProspectRequest,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
    engine: ProspectLifecycleEngine = Depends(get_lifecycle_engine),
) -> DecisionRead | JSONResponse:
    try:
        result = engine.decide(db, actor, prospect_id, dto.is_approved, notes=dto.notes)
    except DomainError as exc:
        return domain_error_response(request, exc)
    return DecisionRead(prospect=result.prospect, client_id=result.client_id, replayed=result.replayed)


@clients_router.post("/clients", response_model=ClientRead, status_code=status.HTTP_201_CREATED)
def create_client(
    request: Request,
    dto: ClientCreate,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> ClientRead | JSONResponse:
    try:
        return client_service.create_client(db, actor, dto)
    except DomainError as exc:
        return domain_error_response(request, exc)


@clients_router.get("/clients", response_model=list[ClientRead])
def list_clients_for_prospect(
    request: Request,
    prospect_id: uuid.UUID = Query(...),
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> list[ClientRead] | JSONResponse:
    try:
        return client_service.list_clients_for_prospect(db, actor, prospect_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@clients_router.get("/clients/{client_id}", response_model=ClientRead)
def get_client(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    actor: ActorUser = Depends(get_current_actor),
) -> ClientRead | JSONResponse:
    try:
        return client_service.get_client(db, actor, client_id)
    except DomainError as exc:
        return domain_error_response(request, exc)
