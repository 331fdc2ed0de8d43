from __future__ import annotations

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_actor
from app.domain.models import ActivityRead, Actor, DashboardStatsRead, TaskRead
from app.services.dashboard_service import DashboardService

router = APIRouter()


def get_dashboard_service() -> DashboardService:
    return DashboardService()


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
Service = Annotated[DashboardService, Depends(get_dashboard_service)]
OnDate = Annotated[date | None, Query(alias="date")]


@router.get("/stats", response_model=DashboardStatsRead)
def get_stats(actor: CurrentActor, service: Service) -> DashboardStatsRead:
    return service.get_stats(actor)


@router.get("/today", response_model=list[TaskRead])
def today(actor: CurrentActor, service: Service, on: OnDate = None) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.today(actor, on)]


@router.get("/upcoming", response_model=list[TaskRead])
def upcoming(actor: CurrentActor, service: Service, on: OnDate = None) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.upcoming(actor, on)]


@router.get("/overdue", response_model=list[TaskRead])
def overdue(actor: CurrentActor, service: Service, on: OnDate = None) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.overdue(actor, on)]


@router.get("/tomorrow", response_model=list[TaskRead])
def tomorrow(actor: CurrentActor, service: Service, on: OnDate = None) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.tomorrow(actor, on)]


@router.get("/open-reports", response_model=list[TaskRead])
def open_reports(actor: CurrentActor, service: Service) -> list[TaskRead]:
    return [TaskRead.model_validate(item) for item in service.open_reports(actor)]


@router.get("/activity", response_model=list[ActivityRead])
def activity(actor: CurrentActor, service: Service, on: OnDate = None) -> list[ActivityRead]:
    return service.activity(actor, on)
