from .models import Correction, PortfolioProjection, ReconciledBroker
from .reconciler import PortfolioStateReconciler

__all__ = ["Correction", "PortfolioProjection", "ReconciledBroker", "PortfolioStateReconciler"]
