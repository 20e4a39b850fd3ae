"""Vehicle scheduling: overlap checks between active contracts."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from models import Contract
from services.errors import VehicleUnavailableError

logger = logging.getLogger(__name__)


def find_conflicting_contract(
    vehicle_id: int,
    start: datetime.date,
    end: datetime.date,
    exclude_contract_id: Optional[int] = None,
) -> Optional[Contract]:
    """First active contract on *vehicle_id* overlapping ``[start, end]``."""
    query = Contract.query.filter(
        Contract.vehicle_id == vehicle_id,
        Contract.status == "active",
        Contract.start_date <= end,
        Contract.end_date >= start,
    )
    if exclude_contract_id is not None:
        query = query.filter(Contract.id != exclude_contract_id)
    return query.order_by(Contract.start_date).first()


def assert_vehicle_free(
    vehicle_id: int,
    start: datetime.date,
    end: datetime.date,
    exclude_contract_id: Optional[int] = None,
) -> None:
    conflict = find_conflicting_contract(vehicle_id, start, end, exclude_contract_id)
    if conflict is not None:
        logger.info(
            "Vehicle %s booked by %s between %s and %s",
            vehicle_id, conflict.contract_number, conflict.start_date, conflict.end_date,
        )
        raise VehicleUnavailableError(
            "Vehicle is already booked for the requested period",
            details={
                "conflicting_contract": conflict.contract_number,
                "start_date": conflict.start_date.isoformat(),
                "end_date": conflict.end_date.isoformat(),
            },
        )
