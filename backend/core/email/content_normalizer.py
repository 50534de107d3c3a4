"""
Content normalization for downstream classification.

Reduces a raw message body (HTML or plain text) to clean text:
1. HTML -> markdown-ish text (headers, lists, links, images kept; script/style dropped)
2. Quoted reply lines dropped; everything after a reply header is cut
3. Short boilerplate footer lines dropped
4. Fallback to the raw body when cleaning leaves (almost) nothing
5. Blank-line runs collapsed
6. Model control tokens neutralized
"""
import logging
import re
from typing import List

from bs4 import BeautifulSoup
from markdownify import markdownify

logger = logging.getLogger(__name__)

FALLBACK_CHARS = 3000
MIN_CLEAN_LENGTH = 10
FOOTER_MAX_LINE_LENGTH = 60

HTML_TAG_PATTERN = re.compile(
    r'<(html|head|body|div|p|br|span|table|tr|td|a|img|h[1-6]|ul|ol|li|b|strong|em|i|font|center|blockquote|script|style)\b[^>]*>',
    re.IGNORECASE,
)

REPLY_HEADER_PATTERN = re.compile(r'^On .* wrote:$', re.IGNORECASE)
QUOTED_HEADER_START = re.compile(r'^(\*\*)?From:(\*\*)? .+$', re.IGNORECASE)
QUOTED_HEADER_FIELD = re.compile(r'^(\*\*)?(Sent|Date|To|Cc|Subject):(\*\*)? .*$', re.IGNORECASE)

FOOTER_PATTERNS = [
    re.compile(r'unsubscribe', re.IGNORECASE),
    re.compile(r'privacy policy', re.IGNORECASE),
    re.compile(r'terms of service', re.IGNORECASE),
    re.compile(r'view (it )?in (your )?browser', re.IGNORECASE),
    re.compile(r'copyright \d{4}', re.IGNORECASE),
]

# (pattern, replacement) applied in order
CONTROL_TOKEN_REPLACEMENTS = [
    (re.compile(r'<\|'), '< |'),
    (re.compile(r'\|>'), '| >'),
    (re.compile(r'\[INST\]', re.IGNORECASE), '[ INST ]'),
    (re.compile(r'\[/INST\]', re.IGNORECASE), '[ /INST ]'),
    (re.compile(r'<s>', re.IGNORECASE), '&lt;s&gt;'),
    (re.compile(r'</s>', re.IGNORECASE), '&lt;/s&gt;'),
]


class ContentNormalizer:
    """Stateless; one instance is shared by every sync run."""

    def __init__(self):
        self.markdown_options = {
            'heading_style': 'ATX',
            'bullets': '-',
            'escape_underscores': False,
            'escape_asterisks': False,
            'escape_misc': False,
        }

    def clean(self, raw_body: str) -> str:
        """
        Clean a message body for classification.

        Never returns an empty string for non-empty input.
        """
        if not raw_body:
            return ""

        text = self.html_to_text(raw_body)
        text = self.filter_lines(text)

        if not text.strip() or len(text) < MIN_CLEAN_LENGTH:
            logger.debug("Cleaning left too little content, falling back to raw body")
            text = raw_body[:FALLBACK_CHARS]

        text = self.collapse_blank_lines(text)
        text = self.sanitize_control_tokens(text)
        return text.strip()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def looks_like_html(text: str) -> bool:
        return bool(HTML_TAG_PATTERN.search(text))

    def html_to_text(self, text: str) -> str:
        """Fold HTML structure into text (entities decoded); plain text passes through."""
        if not self.looks_like_html(text):
            return text

        soup = BeautifulSoup(text, 'html.parser')
        for tag in soup(['script', 'style', 'head']):
            tag.decompose()

        converted = markdownify(str(soup), **self.markdown_options)
        # Trailing spaces come from markdownify's hard line breaks
        return '\n'.join(line.rstrip() for line in converted.replace('\xa0', ' ').split('\n'))

    def filter_lines(self, text: str) -> str:
        """Drop quoted lines and footers; cut at the first reply header."""
        lines = text.split('\n')
        kept: List[str] = []

        for index, line in enumerate(lines):
            stripped = line.strip()

            if stripped.startswith('>'):
                continue

            if REPLY_HEADER_PATTERN.match(stripped) or self._starts_quoted_header_block(lines, index):
                break

            if len(stripped) < FOOTER_MAX_LINE_LENGTH and any(p.search(stripped) for p in FOOTER_PATTERNS):
                continue

            kept.append(line)

        return '\n'.join(kept)

    @staticmethod
    def _starts_quoted_header_block(lines: List[str], index: int) -> bool:
        """A 'From: ...' line directly followed by Sent:/Date:/To:/Subject: (forwarded or quoted mail)."""
        if not QUOTED_HEADER_START.match(lines[index].strip()):
            return False
        for following in lines[index + 1:]:
            if following.strip():
                return bool(QUOTED_HEADER_FIELD.match(following.strip()))
        return False

    @staticmethod
    def collapse_blank_lines(text: str) -> str:
        return re.sub(r'\n{3,}', '\n\n', text)

    @staticmethod
    def sanitize_control_tokens(text: str) -> str:
        for pattern, replacement in CONTROL_TOKEN_REPLACEMENTS:
            text = pattern.sub(replacement, text)
        return text
