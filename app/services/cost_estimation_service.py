from __future__ import annotations

import logging

from app.domain.currency import CurrencyConverter, require_non_negative
from app.domain.errors import ValidationError
from app.domain.models import Caller, CostDetails, CostEstimateCreate, DeviceRequest, NotificationType
from app.domain.state_machine import RequestAction
from app.infra import settings
from app.infra.store import Write
from app.services.notification_service import build_notification
from app.services.request_service import RequestService, log_rejection

logger = logging.getLogger(__name__)


def estimate(
    device_cost: float,
    service_charge: float,
    delivery_charge: float,
    converter: CurrencyConverter,
    *,
    notes: str | None = None,
    estimated_by: str | None = None,
) -> CostDetails:
    device_entry = require_non_negative("device_cost", device_cost)
    service_entry = require_non_negative("service_charge", service_charge)
    delivery_entry = require_non_negative("delivery_charge", delivery_charge)
    total_entry = device_entry + service_entry + delivery_entry
    return CostDetails(
        device_cost=converter.to_canonical(device_entry),
        service_charge=converter.to_canonical(service_entry),
        delivery_charge=converter.to_canonical(delivery_entry),
        total_cost=converter.to_canonical(total_entry),
        device_cost_entry=device_entry,
        service_charge_entry=service_entry,
        delivery_charge_entry=delivery_entry,
        total_cost_entry=total_entry,
        entry_currency=converter.entry_currency,
        canonical_currency=converter.canonical_currency,
        exchange_rate=converter.rate,
        notes=(notes or "").strip() or None,
        estimated_by=estimated_by,
    )


class CostEstimationService:
    def __init__(
        self,
        *,
        converter: CurrencyConverter | None = None,
        requests: RequestService | None = None,
    ) -> None:
        self._converter = converter or CurrencyConverter(
            rate=settings.ENTRY_CURRENCY_RATE,
            entry_currency=settings.ENTRY_CURRENCY,
            canonical_currency=settings.CANONICAL_CURRENCY,
        )
        self._requests = requests or RequestService()

    @property
    def converter(self) -> CurrencyConverter:
        return self._converter

    def estimate_request(self, request_id: str, caller: Caller, payload: CostEstimateCreate) -> DeviceRequest:
        request = self._requests.load(request_id)
        self._requests.check_transition(request, caller, RequestAction.ESTIMATE)
        try:
            details = estimate(
                payload.device_cost,
                payload.service_charge,
                payload.delivery_charge,
                self._converter,
                notes=payload.notes,
                estimated_by=caller.email or caller.user_id,
            )
        except ValidationError as exc:
            log_rejection(logger, exc, action="estimate", subject_id=request_id, actor_id=caller.user_id)
            raise

        notification = build_notification(
            request.owner_user_id,
            NotificationType.COST_ESTIMATE,
            title="Cost Estimate Ready",
            message=(
                "Your device request has been reviewed. Total cost: "
                f"{details.entry_currency} {details.total_cost_entry:.2f} "
                f"({details.canonical_currency} {details.total_cost:.2f})"
            ),
            payload={"request_id": request.id, "total_cost": details.total_cost},
            dedupe_parts=(request.id,),
        )
        return self._requests.apply_action(
            request_id,
            caller,
            RequestAction.ESTIMATE,
            changes={"cost_details": details.model_dump()},
            extra_writes=[Write.create_if_absent(notification)],
            event_payload={"total_cost": details.total_cost, "exchange_rate": details.exchange_rate},
        )
