"""
Causation Marker Store

One marker per (loan, period, kind) records that causation ran. Markers make
causation idempotent and are what the period closer checks for completeness.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .loans import BucketKind
from .storage import StorageInterface


class CausationOutcome(Enum):
    ACCRUED = "accrued"                # Kind applied; amount may be zero
    NOT_APPLICABLE = "not_applicable"  # e.g. no overdue principal, no insurance


def marker_key(loan_id: str, period_id: str, kind: BucketKind) -> str:
    return f"{loan_id}:{period_id}:{kind.value}"


@dataclass(frozen=True)
class CausationMarker:
    loan_id: str
    period_id: str
    kind: BucketKind
    outcome: CausationOutcome
    amount: Decimal
    run_id: str
    caused_through: date
    recorded_at: datetime

    @property
    def key(self) -> str:
        return marker_key(self.loan_id, self.period_id, self.kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.key,
            'loan_id': self.loan_id,
            'period_id': self.period_id,
            'kind': self.kind.value,
            'outcome': self.outcome.value,
            'amount': str(self.amount),
            'run_id': self.run_id,
            'caused_through': self.caused_through.isoformat(),
            'recorded_at': self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CausationMarker':
        return cls(
            loan_id=data['loan_id'],
            period_id=data['period_id'],
            kind=BucketKind(data['kind']),
            outcome=CausationOutcome(data['outcome']),
            amount=Decimal(data['amount']),
            run_id=data['run_id'],
            caused_through=date.fromisoformat(data['caused_through']),
            recorded_at=datetime.fromisoformat(data['recorded_at']),
        )


class CausationMarkerStore:
    """Marker persistence on top of StorageInterface"""

    def __init__(self, storage: StorageInterface, table_name: str = "causation_markers"):
        self.storage = storage
        self.table_name = table_name

    def has_causation_run(self, loan_id: str, period_id: str, kind: BucketKind) -> bool:
        return self.storage.exists(self.table_name, marker_key(loan_id, period_id, kind))

    def get_marker(self, loan_id: str, period_id: str, kind: BucketKind) -> Optional[CausationMarker]:
        data = self.storage.load(self.table_name, marker_key(loan_id, period_id, kind))
        return CausationMarker.from_dict(data) if data else None

    def record_causation_run(self, marker: CausationMarker) -> None:
        """Record a marker; a second marker for the same key is rejected"""
        if self.storage.exists(self.table_name, marker.key):
            raise ValueError(f"Causation marker {marker.key} already recorded")
        self.storage.save(self.table_name, marker.key, marker.to_dict())

    def markers_for_period(self, period_id: str) -> List[CausationMarker]:
        return [
            CausationMarker.from_dict(data)
            for data in self.storage.find(self.table_name, {'period_id': period_id})
        ]
