from __future__ import annotations

from fastapi import Depends, Request

from homehero.core.config import Settings, get_settings
from homehero.core.events import EventBus
from homehero.jobs.scheduler import JobScheduler
from homehero.services.payments import StripePaymentGateway
from homehero.services.purchases import PurchaseReconciler
from homehero.services.repository import get_repository


def get_event_bus(request: Request) -> EventBus | None:
    return getattr(request.app.state, "events", None)


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> StripePaymentGateway:
    return StripePaymentGateway.from_settings(settings)


def get_scheduler(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    events: EventBus | None = Depends(get_event_bus),
) -> JobScheduler:
    return JobScheduler.from_settings(repository, settings, events=events)


def get_reconciler(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    events: EventBus | None = Depends(get_event_bus),
    scheduler: JobScheduler = Depends(get_scheduler),
    gateway: StripePaymentGateway = Depends(get_payment_gateway),
) -> PurchaseReconciler:
    return PurchaseReconciler.from_settings(repository, settings, events=events, jobs=scheduler, gateway=gateway)
