"""
Error Hierarchy Module

Typed exceptions raised by the loan servicing engine. Every error carries a
context dictionary so reconciliation tooling can trace the failing loan,
period or bucket without parsing messages.
"""

from typing import Any, Dict, List, Optional, Tuple


class LoanServicingError(Exception):
    """Base class for all loan servicing errors"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({details})"


# Validation errors

class ValidationError(LoanServicingError, ValueError):
    """Input rejected before any computation"""
    pass


class InvalidTermError(ValidationError):
    pass


class InvalidRateError(ValidationError):
    pass


class InvalidPrincipalError(ValidationError):
    pass


# State transition errors

class StateTransitionError(LoanServicingError):
    """Operation not allowed in the current state of an entity"""
    pass


class InvalidStateTransitionError(StateTransitionError):

    def __init__(self, entity: str, current_state: str, target_state: str,
                 context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        ctx.update({'entity': entity, 'from_state': current_state, 'to_state': target_state})
        super().__init__(
            f"Cannot transition {entity} from {current_state} to {target_state}", ctx
        )
        self.current_state = current_state
        self.target_state = target_state


class IncompleteCausationError(StateTransitionError):
    """Period close refused because some (loan, kind) pairs were never caused"""

    def __init__(self, period_id: str, missing: List[Tuple[str, str]]):
        super().__init__(
            f"Period {period_id} has {len(missing)} missing causation runs",
            {'period_id': period_id, 'missing_count': len(missing)}
        )
        self.period_id = period_id
        self.missing = missing


class PeriodClosedError(StateTransitionError):
    pass


class LoanNotEligibleError(StateTransitionError):
    pass


# Invariant violations

class InvariantViolationError(LoanServicingError):
    """A computed result would break a ledger invariant; nothing was written"""
    pass


class AllocationInvariantError(InvariantViolationError):
    pass


class RoundingDriftError(InvariantViolationError):
    pass


# Lookup errors

class NotFoundError(LoanServicingError, LookupError):
    pass


class LoanNotFoundError(NotFoundError):

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", {'loan_id': loan_id})
        self.loan_id = loan_id


class PeriodNotFoundError(NotFoundError):

    def __init__(self, period_id: str):
        super().__init__(f"Accounting period {period_id} not found", {'period_id': period_id})
        self.period_id = period_id


class WriteOffCaseNotFoundError(NotFoundError):

    def __init__(self, case_id: str):
        super().__init__(f"Write-off case {case_id} not found", {'case_id': case_id})
        self.case_id = case_id


# Configuration / concurrency

class MissingRateConfigurationError(LoanServicingError):
    pass


class ConcurrentModificationError(LoanServicingError):
    """Record was changed by another writer since it was loaded"""

    def __init__(self, table: str, record_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Stale write on {table}/{record_id}",
            {
                'table': table,
                'record_id': record_id,
                'expected_version': expected_version,
                'actual_version': actual_version,
            }
        )
        self.expected_version = expected_version
        self.actual_version = actual_version
