from .models import AIDecision, DecisionOutcome, DecisionResult, Recommendation
from .service import AutonomousTradingService

__all__ = ["AIDecision", "DecisionOutcome", "DecisionResult", "Recommendation", "AutonomousTradingService"]
