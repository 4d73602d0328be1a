"""
Precision Search Workers
"""

from .precision_search_worker import PrecisionSearchWorker

__all__ = ["PrecisionSearchWorker"]
