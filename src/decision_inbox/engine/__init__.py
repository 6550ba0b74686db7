"""Decision resolution engine.

The resolver runs features -> pre-check gate -> classifier -> store for
single emails and for batches.
"""

from decision_inbox.engine.resolver import BatchResult, ClassificationContext, DecisionResolver

__all__ = [
    "BatchResult",
    "ClassificationContext",
    "DecisionResolver",
]
