from .models import DayTradeRecord, PDTCheckResult, PDTStatus, WarningLevel
from .tracker import PDTComplianceTracker

__all__ = [
    "DayTradeRecord",
    "PDTCheckResult",
    "PDTStatus",
    "WarningLevel",
    "PDTComplianceTracker",
]
