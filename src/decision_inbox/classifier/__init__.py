"""Email decision classification components.

This package provides:
- Feature extraction for the pre-check gate
- The recall-biased pre-check gate
- Prompt text and the classify_decision tool definition
- The Claude adapter with timeout and fallback handling
"""

from decision_inbox.classifier.claude_classifier import (
    FALLBACK_REASON,
    ClaudeDecisionClassifier,
    ClassifierOutcome,
    DecisionClassifier,
)
from decision_inbox.classifier.features import (
    ACTION_KEYWORDS,
    EmailFeatures,
    extract_features,
)
from decision_inbox.classifier.precheck import PRECHECK_REASON, should_run_ai
from decision_inbox.classifier.prompts import CLASSIFY_DECISION_TOOL

__all__ = [
    # Features
    "ACTION_KEYWORDS",
    "EmailFeatures",
    "extract_features",
    # Pre-check gate
    "PRECHECK_REASON",
    "should_run_ai",
    # Claude adapter
    "CLASSIFY_DECISION_TOOL",
    "FALLBACK_REASON",
    "ClassifierOutcome",
    "ClaudeDecisionClassifier",
    "DecisionClassifier",
]
