from .engine import PhaseScheduler, new_record
from .report import RunReport, StopReason

__all__ = ["PhaseScheduler", "RunReport", "StopReason", "new_record"]
