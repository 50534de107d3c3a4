"""
AI Email Classifier

Classifies cleaned message text through any OpenAI-compatible chat endpoint
(OpenAI, or a local server such as LM Studio/Ollama via a custom base URL) and
validates the JSON answer with pydantic.

Classification is optional for a sync run: every failure is logged and turns
into None rather than an exception.
"""
from typing import Any, Dict, List, Literal, Optional
from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import json
import logging

from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CATEGORIES = ('spam', 'newsletter', 'promotional', 'transactional', 'social', 'support', 'client', 'internal', 'personal', 'other')
SENTIMENTS = ('Positive', 'Neutral', 'Negative')
PRIORITIES = ('High', 'Medium', 'Low')

OPENAI_HOST = 'api.openai.com'
LOCAL_API_KEY_PLACEHOLDER = 'not-needed-for-local'


class ClassificationResult(BaseModel):
    """Structured output of one classification call."""
    summary: str = Field("", description="A brief summary of the email content")
    category: Literal['spam', 'newsletter', 'promotional', 'transactional', 'social', 'support', 'client', 'internal', 'personal', 'other']
    sentiment: Literal['Positive', 'Neutral', 'Negative'] = 'Neutral'
    priority: Literal['High', 'Medium', 'Low'] = 'Medium'
    is_useless: bool = False
    suggested_actions: List[Literal['none', 'delete', 'archive', 'reply', 'flag']] = Field(default_factory=list)
    draft_response: Optional[str] = None
    key_points: Optional[List[str]] = None
    action_items: Optional[List[str]] = None

    @field_validator('category', 'suggested_actions', mode='before')
    @classmethod
    def _lowercase(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        if isinstance(value, list):
            return [v.strip().lower() if isinstance(v, str) else v for v in value]
        return value

    @field_validator('sentiment', 'priority', mode='before')
    @classmethod
    def _capitalize(cls, value):
        return value.strip().capitalize() if isinstance(value, str) else value


@dataclass
class ConnectionCheck:
    success: bool
    message: str


def _metadata_signals(headers: Dict[str, str]) -> List[str]:
    signals = []
    if headers.get('List-Unsubscribe'):
        signals.append('- Contains Unsubscribe header (High signal for Newsletter/Promo)')
    auto_submitted = headers.get('Auto-Submitted')
    if auto_submitted and auto_submitted.lower() != 'no':
        signals.append(f"- Auto-Submitted: {auto_submitted}")
    importance = headers.get('Importance') or headers.get('X-Priority')
    if importance:
        signals.append(f"- Sender Priority/Importance: {importance}")
    if headers.get('X-Mailer'):
        signals.append(f"- Sent via: {headers['X-Mailer']}")
    return signals


def build_system_prompt(context: Dict[str, Any]) -> str:
    """System prompt for classification; `context` holds subject/sender/date/headers/preferences."""
    lines = [
        "You are an AI Email Assistant. Your task is to analyze the provided email and extract structured information as JSON.",
        "Do NOT include any greetings, chatter, or special tokens in your output.",
        "",
        "Respond with a JSON object with the keys: summary, category, sentiment, priority, is_useless,",
        "suggested_actions, draft_response (optional), key_points (optional), action_items (optional).",
        f"- category: one of {', '.join(CATEGORIES)}",
        f"- sentiment: one of {', '.join(SENTIMENTS)}",
        f"- priority: one of {', '.join(PRIORITIES)}",
        "- suggested_actions: list drawn from none, delete, archive, reply, flag",
        "",
        "Definitions for Categories:",
        '- "promotional": Marketing, sales, discounts',
        '- "transactional": Receipts, shipping, confirmations',
        '- "social": LinkedIn, friends, social updates',
        '- "newsletter": Subscribed content',
        '- "spam": Junk, suspicious',
        "",
        "Context:",
        f"- Current Date: {datetime.now(timezone.utc).isoformat()}",
        f"- Subject: {context.get('subject', '')}",
        f"- From: {context.get('sender', '')}",
        f"- Date: {context.get('date', '')}",
    ]

    signals = _metadata_signals(context.get('headers') or {})
    if signals:
        lines += ["", "Metadata Signals:"] + signals

    preferences = context.get('preferences') or {}
    if preferences.get('auto_trash_spam'):
        lines.append('- User has auto-trash spam enabled')
    if preferences.get('smart_drafts'):
        lines.append('- User wants draft responses for important emails')
    return '\n'.join(lines)


class EmailClassifier:
    """
    Classification, reply drafting and connectivity check over one model/endpoint.

    Usage:
        classifier = EmailClassifier(model="gpt-4o-mini", api_key=key)
        result = await classifier.classify(clean_text, {"subject": ..., "sender": ...})
    """

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        max_content_chars: int = 2500,
        temperature: float = 0.1,
        validation_retries: int = 1,
        retry_delay: float = 1.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Args:
            model: Chat model name
            api_key: API key (optional for custom non-OpenAI endpoints)
            base_url: Custom OpenAI-compatible endpoint
            max_retries: Transport retries (handled by the OpenAI client)
            max_content_chars: Cleaned body characters sent to the model
            validation_retries: Extra attempts when the answer is not valid JSON
            client: Pre-built client (tests)
        """
        self.model = model
        self.base_url = base_url
        self.max_content_chars = max_content_chars
        self.temperature = temperature
        self.validation_retries = validation_retries
        self.retry_delay = retry_delay
        self.client = client

        is_custom_endpoint = bool(base_url) and OPENAI_HOST not in base_url
        if self.client is None and (api_key or is_custom_endpoint):
            self.client = AsyncOpenAI(
                api_key=api_key or LOCAL_API_KEY_PLACEHOLDER,
                base_url=base_url,
                max_retries=max_retries,
            )
            logger.info(f"Classifier initialized (model={model}, base_url={base_url or 'default'})")
        elif self.client is None:
            logger.warning("LLM_API_KEY is missing and no custom LLM endpoint configured. AI analysis will not work.")

    @property
    def is_ready(self) -> bool:
        return self.client is not None

    async def classify(self, clean_text: str, context: Optional[Dict[str, Any]] = None) -> Optional[ClassificationResult]:
        """
        Classify one message.

        Args:
            clean_text: Output of ContentNormalizer.clean
            context: subject, sender, date, headers (metadata signals), preferences

        Returns:
            ClassificationResult, or None when unconfigured or on any failure
        """
        if not self.is_ready:
            logger.debug("Classifier not configured, skipping analysis")
            return None

        context = context or {}
        messages = [
            {"role": "system", "content": build_system_prompt(context)},
            {"role": "user", "content": clean_text[:self.max_content_chars] or "[Empty email body]"},
        ]

        for attempt in range(self.validation_retries + 1):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                    temperature=self.temperature,
                )
                content = response.choices[0].message.content or ""
                result = ClassificationResult.model_validate(json.loads(content))
                logger.debug(f"Classified '{context.get('subject', '')[:50]}': {result.category}/{result.priority}")
                return result

            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Classifier output invalid (attempt {attempt + 1}/{self.validation_retries + 1}): {e}")
                if attempt < self.validation_retries:
                    await asyncio.sleep(self.retry_delay * (2 ** attempt))
            except (OpenAIError, IndexError, AttributeError) as e:
                logger.error(f"AI analysis failed: {type(e).__name__}: {e}")
                return None

        return None

    async def generate_draft_reply(
        self,
        subject: str,
        sender: str,
        body: str,
        instructions: Optional[str] = None,
    ) -> Optional[str]:
        """Reply text for a message, or None when unconfigured or on failure."""
        if not self.is_ready:
            return None

        system = "You are a professional email assistant. Generate a polite and appropriate reply to the email."
        if instructions:
            system += f"\nAdditional instructions: {instructions}"
        system += "\nKeep the response concise and professional."

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": (
                        f"Original email from {sender}:\nSubject: {subject}\n\n"
                        f"{body[:self.max_content_chars]}\n\nPlease write a reply."
                    )},
                ],
            )
            return (response.choices[0].message.content or "").strip() or None
        except (OpenAIError, IndexError, AttributeError) as e:
            logger.error(f"Draft generation failed: {e}")
            return None

    async def test_connection(self) -> ConnectionCheck:
        if not self.is_ready:
            return ConnectionCheck(False, "Intelligence service not initialized. Check your API Key.")
        try:
            await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": 'Say "Connection Successful"'}],
                max_tokens=5,
            )
            return ConnectionCheck(True, "Connection successful!")
        except OpenAIError as e:
            logger.error(f"Connection test failed: {e}")
            return ConnectionCheck(False, str(e))


class ClassifierFactory:
    """
    Builds classifiers from system settings plus per-user overrides.

    Classifiers are cached per (model, api_key, base_url), so repeated runs
    for the same configuration share one client and its connection pool.
    """

    def __init__(self, settings, vault, client_factory=None):
        """
        Args:
            settings: Settings (llm_* fields)
            vault: CredentialVault for the user's stored API key
            client_factory: Optional callable(model, api_key, base_url) -> AsyncOpenAI (tests)
        """
        self.settings = settings
        self.vault = vault
        self.client_factory = client_factory
        self._classifiers: Dict[tuple, EmailClassifier] = {}

    def default(self) -> EmailClassifier:
        return self._get(self.settings.llm_model, self.settings.llm_api_key, self.settings.llm_base_url)

    def for_user(self, user_settings=None) -> EmailClassifier:
        """Classifier honoring the user's llm_model / llm_base_url / llm_api_key when set."""
        if user_settings is None or not (user_settings.llm_model or user_settings.llm_base_url or user_settings.llm_api_key):
            return self.default()

        user_key = self.vault.decrypt(user_settings.llm_api_key) if user_settings.llm_api_key else None
        return self._get(
            user_settings.llm_model or self.settings.llm_model,
            user_key or self.settings.llm_api_key,
            user_settings.llm_base_url or self.settings.llm_base_url,
        )

    async def aclose(self):
        """Close every cached client."""
        classifiers = list(self._classifiers.values())
        self._classifiers.clear()
        for classifier in classifiers:
            if classifier.client is not None:
                await classifier.client.close()

    def _get(self, model: str, api_key: Optional[str], base_url: Optional[str]) -> EmailClassifier:
        key = (model, api_key, base_url)
        if key not in self._classifiers:
            self._classifiers[key] = self._build(model, api_key, base_url)
        return self._classifiers[key]

    def _build(self, model: str, api_key: Optional[str], base_url: Optional[str]) -> EmailClassifier:
        client = self.client_factory(model, api_key, base_url) if self.client_factory else None
        return EmailClassifier(
            model=model,
            api_key=api_key,
            base_url=base_url,
            max_retries=self.settings.llm_max_retries,
            max_content_chars=self.settings.llm_max_content_chars,
            client=client,
        )
