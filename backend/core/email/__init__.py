"""Email synchronization module"""
from .content_normalizer import ContentNormalizer
from .rule_engine import RuleEngine, AutomationRule, RuleCondition, MessageFacts, ActionPlan, DraftRequest

__all__ = [
    "ContentNormalizer",
    "RuleEngine",
    "AutomationRule",
    "RuleCondition",
    "MessageFacts",
    "ActionPlan",
    "DraftRequest",
]
