"""Clinic knowledge for front-desk questions (hours, parking, prices...).

Entries come from a JSON file named by ``CLINIC_KNOWLEDGE_FILE``, either a
mapping of category to answer::

    {"hours": "We're open 8 to 6 weekdays.", "parking": "Free parking out the front."}

or a list of ``{"category", "answer", "keywords"}`` records. Known categories
get default keywords; custom ones should bring their own. The whole set goes
into the system prompt, with the entries matching the caller's question
listed first so the model answers from them rather than inventing.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from clinicdesk.errors import ConfigurationError
from clinicdesk.validation import match_any_keyword

logger = logging.getLogger(__name__)

CATEGORY_KEYWORDS = {
    "hours": ("hours", "open", "opening", "close", "closing", "closed", "when are you"),
    "location": ("where", "address", "location", "directions", "located"),
    "parking": ("parking", "park", "car park"),
    "prices": ("cost", "price", "prices", "how much", "fee", "fees", "charge"),
    "first_visit": ("first visit", "first time", "what to expect", "bring", "new patient"),
    "services": ("services", "treat", "treatment", "what do you do", "what kind"),
    "insurance": ("insurance", "health fund", "medicare", "rebate", "bulk bill", "bulk billing"),
    "cancellation": ("cancellation policy", "late cancel", "cancellation fee", "no show"),
}

URL_PATTERN = re.compile(r"https?://\S+")
EMAIL_PATTERN = re.compile(r"[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}", re.IGNORECASE)


@dataclass(frozen=True)
class KnowledgeEntry:
    category: str
    answer: str
    keywords: tuple[str, ...] = ()


def format_for_voice(answer: str) -> str:
    """Make a written answer speakable: no links or addresses, ends in a full stop."""
    text = URL_PATTERN.sub("our website", answer.strip())
    text = EMAIL_PATTERN.sub("email us", text)
    text = re.sub(r"\*\*|#+ ", "", text)
    if text and text[-1] not in ".!?":
        text += "."
    return text


def _entry(category: str, answer: str, keywords=None) -> KnowledgeEntry:
    category = category.strip().lower().replace(" ", "_").replace("-", "_")
    if keywords:
        words = tuple(str(k).lower() for k in keywords)
    else:
        words = CATEGORY_KEYWORDS.get(category, (category.replace("_", " "),))
    return KnowledgeEntry(category, format_for_voice(answer), words)


def parse_entries(data) -> list[KnowledgeEntry]:
    if isinstance(data, dict):
        return [_entry(category, str(answer)) for category, answer in data.items() if answer]
    if isinstance(data, list):
        entries = []
        for record in data:
            if not isinstance(record, dict) or not record.get("category") or not record.get("answer"):
                raise ConfigurationError(f"Knowledge record needs a category and an answer: {record!r}")
            entries.append(_entry(str(record["category"]), str(record["answer"]), record.get("keywords")))
        return entries
    raise ConfigurationError("Knowledge file must hold an object or a list")


class KnowledgeBase:
    def __init__(self, entries: list[KnowledgeEntry] | None = None):
        self.entries = list(entries or [])

    def __bool__(self) -> bool:
        return bool(self.entries)

    def match(self, text: str | None) -> list[KnowledgeEntry]:
        """Entries whose keywords appear in ``text``, in file order."""
        if not text:
            return []
        lower = text.lower().replace("’", "'")
        return [e for e in self.entries if match_any_keyword(lower, frozenset(e.keywords))]

    def answer_for(self, text: str | None) -> str | None:
        matches = self.match(text)
        return matches[0].answer if matches else None

    def prompt_section(self, utterance: str | None = None) -> str:
        if not self.entries:
            return ""
        relevant = self.match(utterance)
        rest = [e for e in self.entries if e not in relevant]
        lines = ["CLINIC INFO (answer clinic questions ONLY from this; if it isn't here, say reception will follow up):"]
        if relevant:
            lines.append("Relevant to the caller's question:")
            lines.extend(f"- {e.category}: {e.answer}" for e in relevant)
            if rest:
                lines.append("Other:")
        lines.extend(f"- {e.category}: {e.answer}" for e in rest)
        return "\n".join(lines)


def load_knowledge(path: str | None) -> KnowledgeBase:
    """Load the knowledge file. No path gives an empty base; a missing file is a warning."""
    if not path:
        return KnowledgeBase()
    file = Path(path)
    if not file.exists():
        logger.warning("Knowledge file %s not found, clinic questions will go to reception", path)
        return KnowledgeBase()
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Knowledge file {path} is not valid JSON: {e}") from e
    base = KnowledgeBase(parse_entries(data))
    logger.info("Loaded %d knowledge entries from %s", len(base.entries), path)
    return base
