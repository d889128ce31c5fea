import logging
import re

logger = logging.getLogger(__name__)


def match_any_keyword(text: str, keywords: set[str] | frozenset[str]) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd", "null",
    "{{caller_name}}", "caller_name", "patient_name", "new caller",
}

PRONOUNS = {
    "myself", "yourself", "himself", "herself", "itself", "ourselves", "themselves",
    "me", "you", "him", "her", "us", "them", "i", "we", "they",
    "my", "your", "his", "its", "our", "their",
}

RELATION_WORDS = {
    "son", "daughter", "wife", "husband", "partner", "child", "kid", "kids",
    "children", "baby", "mother", "father", "mom", "dad", "mum", "brother",
    "sister", "friend", "boyfriend", "girlfriend", "spouse", "fiance", "fiancee",
}

NON_NAME_WORDS = {
    "for", "and", "the", "a", "an", "this", "that", "here", "there",
    "when", "what", "where", "which", "who", "whom", "whose",
    "today", "tomorrow", "both", "all", "some", "any", "each",
    "appointment", "booking", "please", "thanks", "thank", "can", "make",
    "book", "see", "get", "need", "want", "like", "yes", "yeah", "hi", "hello",
    "ok", "okay", "so", "just", "um", "uh", "with",
}

PLACEHOLDER_NAMES = {"primary", "secondary", "caller", "patient1", "patient2"}

REFERENCE_PREFIXES = ("my ", "your ", "his ", "her ", "the ", "for ")


def validate_name(value: str | None) -> str:
    """Return a cleaned caller name, or "" for placeholders and junk."""
    if not value:
        return ""
    cleaned = re.sub(r"\s+", " ", value).strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    # Reject phone numbers used as names
    if re.match(r"^[\d+\-() ]{7,}$", cleaned):
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    return cleaned


def is_valid_person_name(name: str | None) -> bool:
    """True if ``name`` looks like a real name rather than "myself" or "my son"."""
    if not name or not name.strip():
        return False
    lower = re.sub(r"\s+", " ", name.lower().strip())
    if lower in PRONOUNS or lower in PLACEHOLDER_NAMES or lower in NON_NAME_WORDS:
        logger.debug("Rejected non-name: %s", name)
        return False
    if lower.startswith(REFERENCE_PREFIXES):
        logger.debug("Rejected possessive reference: %s", name)
        return False
    if lower in RELATION_WORDS:
        return False
    if any(lower.startswith(word + " ") for word in NON_NAME_WORDS):
        return False
    return len(lower) >= 2


def split_full_name(full_name: str | None) -> tuple[str, str]:
    """Split into (first, last). A single token becomes the first name."""
    parts = validate_name(full_name).split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def sanitize_email(value: str | None) -> str | None:
    """Clean up a spoken or typed email address, or return None if unusable."""
    if not value:
        return None
    e = str(value).strip()
    # Trailing punctuation from speech recognition ("jane@example.com.")
    e = re.sub(r"[,.;:!?]+$", "", e)
    e = re.sub(r"\s+", "", e)
    if re.match(r"^[^\s@]+@[^\s@]+\.[^\s@]+$", e):
        return e.lower()
    return None


def sanitize_phone_e164(value: str | None) -> str | None:
    """Normalize an Australian phone number to E.164, or None if unrecognized."""
    if not value:
        return None
    s = re.sub(r"[^\d+]", "", str(value))

    # Redundant trunk zero after the country code: +6104... / +610[2378]...
    if re.match(r"^\+6104\d{8}$", s):
        s = "+614" + s[5:]
    if re.match(r"^\+610[2378]\d{8}$", s):
        s = "+61" + s[4:]

    # Local mobile / landline
    if re.match(r"^04\d{8}$", s) or re.match(r"^0[2378]\d{8}$", s):
        s = "+61" + s[1:]

    if re.match(r"^\+61[2-478]\d{8}$", s):
        return s
    if re.match(r"^61[2-478]\d{8}$", s):
        return "+" + s
    # Non-AU numbers already in E.164 pass through unchanged
    if re.match(r"^\+[1-9]\d{7,14}$", s) and not s.startswith("+61"):
        return s
    return None


def phone_variants(value: str | None) -> list[str]:
    """E.164 form plus the local 0-prefixed form, for matching stored numbers."""
    e164 = sanitize_phone_e164(value)
    if not e164:
        return []
    variants = [e164]
    if e164.startswith("+61"):
        variants.append("0" + e164[3:])
    return variants


def mask_phone(value: str | None) -> str:
    """Keep only the last 3 digits for logging."""
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if len(digits) <= 3:
        return "***"
    return "*" * (len(digits) - 3) + digits[-3:]
