"""
Rule-based action dispatch.
Runs after classification to decide what happens to each message.

A rule condition is a conjunction of:
- one primary predicate, either over a classified field (category, sentiment,
  priority, is_useless) or over message metadata (sender exact/domain/substring,
  subject substring, body substring)
- an optional "older_than_days" age qualifier

Two condition shapes are accepted:
    {"category": "newsletter", "older_than_days": 30}
    {"field": "sender", "operator": "domain_equals", "value": "example.com"}

Evaluation is pure: it returns an ActionPlan and never touches the provider.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import logging

from backend.core.database.models import utcnow

logger = logging.getLogger(__name__)

SUPPORTED_ACTIONS = ('archive', 'delete', 'draft', 'star', 'read')
CLASSIFIED_FIELDS = ('category', 'sentiment', 'priority', 'is_useless')
METADATA_FIELDS = ('sender', 'subject', 'body')
OPERATORS = ('equals', 'contains', 'domain_equals')

# Shorthand keys: key -> (field, operator)
SHORTHAND_KEYS = {
    'category': ('category', 'equals'),
    'sentiment': ('sentiment', 'equals'),
    'priority': ('priority', 'equals'),
    'ai_priority': ('priority', 'equals'),
    'is_useless': ('is_useless', 'equals'),
    'sender': ('sender', 'equals'),
    'sender_email': ('sender', 'equals'),
    'sender_domain': ('sender', 'domain_equals'),
    'sender_contains': ('sender', 'contains'),
    'subject_contains': ('subject', 'contains'),
    'body_contains': ('body', 'contains'),
}


def extract_address(sender: str) -> str:
    """'Jane Doe <jane@example.com>' -> 'jane@example.com' (lowercased)."""
    sender = (sender or '').strip()
    if '<' in sender and '>' in sender:
        sender = sender[sender.rfind('<') + 1:sender.rfind('>')]
    return sender.strip().strip('"').lower()


def extract_domain(sender: str) -> str:
    address = extract_address(sender)
    return address.rsplit('@', 1)[1] if '@' in address else ''


@dataclass
class MessageFacts:
    """Everything a rule can look at for one message."""
    sender: str = ''
    subject: str = ''
    body: str = ''
    received_at: Optional[datetime] = None
    category: Optional[str] = None
    sentiment: Optional[str] = None
    priority: Optional[str] = None
    is_useless: bool = False
    suggested_actions: List[str] = field(default_factory=list)
    draft_response: Optional[str] = None


@dataclass
class Predicate:
    """A single field/operator/value test"""
    field: str
    operator: str
    value: Any

    def evaluate(self, facts: MessageFacts) -> bool:
        if self.field == 'is_useless':
            return bool(facts.is_useless) == _as_bool(self.value)

        if self.field in ('category', 'sentiment', 'priority'):
            actual = getattr(facts, self.field)
            return actual is not None and str(actual).lower() == str(self.value).lower()

        expected = str(self.value).lower()
        if self.field == 'sender':
            if self.operator == 'domain_equals':
                return extract_domain(facts.sender) == expected.lstrip('@')
            if self.operator == 'equals':
                return extract_address(facts.sender) == extract_address(expected)
            return expected in (facts.sender or '').lower()

        actual = (getattr(facts, self.field) or '').lower()
        if self.operator == 'equals':
            return actual == expected
        return expected in actual


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


@dataclass
class RuleCondition:
    """Parsed rule condition (all parts must hold)."""
    predicates: List[Predicate] = field(default_factory=list)
    older_than_days: Optional[int] = None

    @classmethod
    def parse(cls, raw: Optional[Dict[str, Any]]) -> "RuleCondition":
        """
        Parse a stored condition dict.

        Unknown keys and malformed predicates are logged and ignored.
        """
        raw = dict(raw or {})
        condition = cls()

        age = raw.pop('older_than_days', None)
        if age is not None:
            try:
                condition.older_than_days = int(age)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid older_than_days: {age!r}")

        if 'field' in raw:
            name = raw.pop('field')
            operator = raw.pop('operator', 'equals')
            value = raw.pop('value', None)
            if name in CLASSIFIED_FIELDS + METADATA_FIELDS and operator in OPERATORS and value is not None:
                condition.predicates.append(Predicate(name, operator, value))
            else:
                logger.warning(f"Ignoring unsupported predicate: {name} {operator} {value!r}")

        for key, value in raw.items():
            if key in SHORTHAND_KEYS and value is not None:
                name, operator = SHORTHAND_KEYS[key]
                condition.predicates.append(Predicate(name, operator, value))
            else:
                logger.warning(f"Unknown condition key: {key}")

        return condition

    @property
    def is_empty(self) -> bool:
        return not self.predicates and self.older_than_days is None

    def matches(self, facts: MessageFacts, now: datetime) -> bool:
        if self.is_empty:
            return False
        if not all(p.evaluate(facts) for p in self.predicates):
            return False
        if self.older_than_days is not None:
            if facts.received_at is None:
                return False
            return now - facts.received_at > timedelta(days=self.older_than_days)
        return True


@dataclass
class AutomationRule:
    """Immutable view of a stored Rule."""
    id: str
    name: str
    condition: RuleCondition
    actions: List[str]
    instructions: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_model(cls, rule) -> "AutomationRule":
        actions = []
        for action in rule.actions or []:
            action = str(action).lower()
            if action in SUPPORTED_ACTIONS:
                actions.append(action)
            else:
                logger.warning(f"Rule '{rule.name}' has unsupported action: {action}")
        return cls(
            id=str(rule.id),
            name=rule.name,
            condition=RuleCondition.parse(rule.condition),
            actions=actions,
            instructions=rule.instructions,
            attachments=list(rule.attachments or []),
        )


@dataclass
class DraftRequest:
    """Inputs for reply generation carried from the rule that asked for a draft."""
    rule_id: Optional[str] = None
    instructions: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    body: Optional[str] = None  # Ready-made reply (smart drafts)


@dataclass
class ActionPlan:
    actions: List[str] = field(default_factory=list)
    matched_rule_ids: List[str] = field(default_factory=list)
    draft: Optional[DraftRequest] = None

    @property
    def is_delete(self) -> bool:
        return 'delete' in self.actions


class RuleEngine:
    """
    Evaluates a user's enabled rules in creation order.

    Every matching rule contributes its actions; duplicates collapse and a
    delete replaces everything else.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def evaluate(
        self,
        rules: List[AutomationRule],
        facts: MessageFacts,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> ActionPlan:
        """
        Build the action plan for one classified message.

        Args:
            rules: Enabled rules in creation order
            facts: Message metadata plus classification
            preferences: User feature toggles (auto_trash_spam, smart_drafts)
        """
        preferences = preferences or {}
        now = self.clock()
        plan = ActionPlan()

        if preferences.get('auto_trash_spam') and facts.is_useless and (facts.category or '').lower() == 'spam':
            plan.actions.append('delete')

        if preferences.get('smart_drafts') and 'reply' in facts.suggested_actions and facts.draft_response:
            plan.actions.append('draft')
            plan.draft = DraftRequest(body=facts.draft_response)

        for rule in rules:
            if not rule.condition.matches(facts, now):
                continue

            logger.debug(f"Rule matched: {rule.name} -> {rule.actions}")
            plan.matched_rule_ids.append(rule.id)
            for action in rule.actions:
                if action not in plan.actions:
                    plan.actions.append(action)
                if action == 'draft' and (plan.draft is None or plan.draft.rule_id is None):
                    plan.draft = DraftRequest(
                        rule_id=rule.id,
                        instructions=rule.instructions,
                        attachments=list(rule.attachments),
                        body=plan.draft.body if plan.draft else None,
                    )

        if plan.is_delete:
            # Nothing else can be applied to a trashed message
            plan.actions = ['delete']
            plan.draft = None

        return plan
