from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from app.metrics import observe_data_quality_warning


logger = logging.getLogger("app.workpackages.duration")

HOURS_PER_DAY = Decimal("8")
HOURS_PER_WEEK = Decimal("40")
DEFAULT_UNIT_OF_MEASURE = "day"

_UNIT_ALIASES = {
    "day": "day",
    "days": "day",
    "hour": "hour",
    "hours": "hour",
    "hr": "hour",
    "hrs": "hour",
    "week": "week",
    "weeks": "week",
}


class EffortInput(Protocol):
    quantity: Any
    unit_of_measure: Any
    estimated_hours_each: Any


@dataclass(slots=True)
class DataQualityWarning:
    code: str
    message: str
    phase_name: str | None = None
    deliverable_label: str | None = None


@dataclass(slots=True)
class PhaseEffort:
    total_hours: Decimal
    duration_days: int
    warnings: list[DataQualityWarning] = field(default_factory=list)


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def resolve_unit(raw: str | None) -> str | None:
    """Canonical unit for ``raw``, or ``None`` when it is not recognized."""
    if raw is None or not str(raw).strip():
        return DEFAULT_UNIT_OF_MEASURE
    return _UNIT_ALIASES.get(str(raw).strip().lower())


@dataclass(slots=True)
class DurationNormalizationService:
    """Converts quantity x unit-of-measure x hours into hours and business days."""

    hours_per_day: Decimal = HOURS_PER_DAY
    hours_per_week: Decimal = HOURS_PER_WEEK

    def normalize_duration(
        self,
        item: EffortInput,
        *,
        warnings: list[DataQualityWarning] | None = None,
        phase_name: str | None = None,
    ) -> Decimal:
        label = getattr(item, "deliverable_label", None)
        quantity = _to_decimal(item.quantity)
        if quantity <= 0:
            self._warn(
                warnings,
                DataQualityWarning(
                    code="non_positive_quantity",
                    message=f"quantity {quantity} contributes no effort",
                    phase_name=phase_name,
                    deliverable_label=label,
                ),
            )
            return Decimal("0")

        unit = resolve_unit(item.unit_of_measure)
        if unit is None:
            self._warn(
                warnings,
                DataQualityWarning(
                    code="unknown_unit_of_measure",
                    message=f"unit of measure '{item.unit_of_measure}' not recognized, treated as day",
                    phase_name=phase_name,
                    deliverable_label=label,
                ),
            )
            unit = DEFAULT_UNIT_OF_MEASURE

        if unit == "hour":
            return _to_decimal(item.estimated_hours_each) * quantity
        if unit == "week":
            return self.hours_per_week * quantity
        return self.hours_per_day * quantity

    def hours_to_business_days(self, total_hours: Decimal) -> int:
        if total_hours <= 0:
            return 0
        return math.ceil(total_hours / self.hours_per_day)

    def calculate_phase_total_duration(self, items: Iterable[EffortInput]) -> int:
        return self.summarize_phase(items).duration_days

    def summarize_phase(self, items: Iterable[EffortInput], *, phase_name: str | None = None) -> PhaseEffort:
        warnings: list[DataQualityWarning] = []
        total_hours = Decimal("0")
        for item in items:
            total_hours += self.normalize_duration(item, warnings=warnings, phase_name=phase_name)
        return PhaseEffort(
            total_hours=total_hours,
            duration_days=self.hours_to_business_days(total_hours),
            warnings=warnings,
        )

    @staticmethod
    def _warn(sink: list[DataQualityWarning] | None, warning: DataQualityWarning) -> None:
        observe_data_quality_warning(warning.code)
        logger.warning(
            "workpackage.data_quality_warning",
            extra={
                "warning_code": warning.code,
                "phase_name": warning.phase_name,
                "deliverable_label": warning.deliverable_label,
            },
        )
        if sink is not None:
            sink.append(warning)


duration_service = DurationNormalizationService()
