"""Health subsystem — check engine, SQLite storage, incidents, scheduler."""

from .engine import CheckResult, ErrorCode, execute_check, execute_check_bounded
from .incidents import Evaluation, IncidentEvaluator, Transition
from .scheduler import HealthScheduler, TickSummary
from .status import LiveStatus, ServiceStatus, derive_status
from .store import HealthStore, Incident, IncidentConflictError, StoreUnavailableError
