"""Deterministic intent detection for utterances the state machine must not
leave to the language model: hangups, goodbyes, yes/no answers, "who is the
booking for", and group-booking requests.

All checks are keyword/regex based and run before the turn interpreter, so
their outcome is the same no matter what the model would have said.
"""

import re
from enum import Enum
from typing import Protocol

from clinicdesk.session import Participant
from clinicdesk.validation import (
    NON_NAME_WORDS,
    PRONOUNS,
    RELATION_WORDS,
    is_valid_person_name,
    match_any_keyword,
)


class IntentTag(Enum):
    HANGUP = "hangup"
    HANGUP_QUESTION = "hangup_question"
    GOODBYE = "goodbye"
    FAQ = "faq"
    OTHER = "other"


class IntentClassifier(Protocol):
    def classify(self, utterance: str) -> IntentTag: ...


HANGUP_COMMANDS = frozenset({
    "hang up", "hangup", "end the call", "end call", "close the call", "disconnect",
})
HANGUP_QUESTION_MARKERS = frozenset({"are you going to", "will you", "can you", "should i", "do you"})
# "don't hang up", "do not end the call yet", "please don't just disconnect"
NEGATED_HANGUP_PATTERN = re.compile(
    r"\b(don't|dont|do not|never|not|no need to)( \w+){0,2} (hang ?up|end (the )?call|close the call|disconnect)\b"
)

GOODBYE_PHRASES = frozenset({
    "no", "nope", "nah", "that's it", "thats it", "that's all", "thats all",
    "that is all", "that is it", "goodbye", "bye", "good bye", "see ya", "see you",
    "i'm good", "im good", "i'm done", "im done", "that's everything",
    "thats everything", "nothing else", "all set", "all done", "we're done",
    "were done", "we are done", "all good", "no thanks", "no thank you",
    "no more", "nothing more", "finished", "i'm finished", "done",
    "ok thanks", "okay thanks", "great thanks", "alright bye",
})

FAQ_KEYWORDS = frozenset({
    "price", "cost", "how much", "pay", "payment", "cash", "card",
    "directions", "where", "address", "location", "find you",
    "parking", "park", "wear", "bring", "prepare", "what to",
    "cancel", "reschedule", "change", "move", "another appointment", "book",
    "open", "hours", "insurance", "medicare",
})

YES_PHRASES = frozenset({
    "yes", "yeah", "yep", "yup", "sure", "ok", "okay", "correct", "right",
    "that's me", "thats me", "it's me", "its me", "i am", "that's right",
    "perfect", "sounds good", "go ahead", "please do",
})
NO_PHRASES = frozenset({"no", "nope", "nah", "not really", "wrong", "incorrect"})

GROUP_CONFIRM_PHRASES = frozenset({
    "yes", "yeah", "yep", "sure", "ok", "okay", "perfect", "sounds good",
    "that works", "works for us", "great",
})
GROUP_DECLINE_PHRASES = frozenset({"no", "nope", "different", "change", "doesn't work", "won't work"})
# "no" inside these is agreement, not a decline
AFFIRMING_IDIOMS = re.compile(r"\b(no worries|no problem|no problems|not a problem|no dramas|no issues?)\b")

RELATION_PATTERN = (
    r"(son|daughter|child|kid|kids|children|baby|wife|husband|partner|mum|mom|"
    r"mother|dad|father|brother|sister|friend|family|grandson|granddaughter|"
    r"grandmother|grandfather|nan|nana|grandma|grandpa)"
)

SOMEONE_ELSE_PATTERNS = [
    re.compile(r"\bsome(one|body) else\b"),
    re.compile(rf"\b(for|it's|its|is) my {RELATION_PATTERN}\b"),
    re.compile(rf"\bmy {RELATION_PATTERN}\b"),
    re.compile(r"\bon behalf of\b"),
    re.compile(r"\bnot (for )?me\b"),
    re.compile(r"\bnot myself\b"),
    re.compile(r"\bdifferent person\b"),
    re.compile(r"\b(another|other) person\b"),
]

MYSELF_PHRASES = frozenset({
    "myself", "me", "for me", "it's me", "its me", "that's me", "thats me",
    "i am", "i'm the patient", "it's for me", "yes", "yeah", "yep", "correct",
})

GROUP_BOOKING_PATTERNS = [
    re.compile(rf"\b(myself|me) and my {RELATION_PATTERN}\b"),
    re.compile(rf"\bmy {RELATION_PATTERN} and (me|myself|i)\b"),
    re.compile(r"\bboth of us\b"),
    re.compile(r"\b(two|three) of us\b"),
    re.compile(r"\bfor (both|two|the two)\b"),
    re.compile(r"\bappointments? for (both|two|me and)\b"),
    re.compile(r"\bbook(ing)? for (me|myself) and\b"),
    re.compile(r"\bfor myself and\b"),
]

# Replies that invite the caller to (re)start a booking. Once an appointment
# exists these must not be spoken.
BOOKING_INVITATION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"would you like to (make|book|schedule|proceed with) an? (appointment|booking)",
        r"can i (help you )?(book|schedule|make) an? appointment",
        r"shall i (book|schedule|make|confirm) (an? )?(appointment|that|it)",
        r"do you want (me )?to (book|schedule|make|confirm)",
        r"would you like me to (book|schedule|make|confirm|lock)",
        r"would you like to (proceed|go ahead|confirm)",
        r"(shall|can) i (confirm|lock) (that|it) in",
        r"(shall|can) i (confirm|lock) that for you",
        r"want me to (book|confirm|lock) (that|it)",
        r"let me (book|confirm|lock) that (in|for you)",
        r"when would you like to come in",
        r"what time works( best| for you)?",
        r"can i (help|assist) you with an? (booking|appointment)",
        r"would you like to (set up|arrange)",
    )
]


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower().replace("’", "'")).strip()


def is_hangup_question(text: str) -> bool:
    lower = _clean(text)
    return "hang up" in lower and any(marker in lower for marker in HANGUP_QUESTION_MARKERS)


def is_hangup_negated(text: str) -> bool:
    return bool(NEGATED_HANGUP_PATTERN.search(_clean(text)))


def is_hangup_command(text: str) -> bool:
    if is_hangup_question(text) or is_hangup_negated(text):
        return False
    return match_any_keyword(_clean(text), HANGUP_COMMANDS)


def is_faq_request(text: str) -> bool:
    return match_any_keyword(_clean(text), FAQ_KEYWORDS)


def is_goodbye(text: str) -> bool:
    """Closing intent, unless the caller is also asking about something."""
    lower = _clean(text)
    if not lower or is_faq_request(lower):
        return False
    return match_any_keyword(lower, GOODBYE_PHRASES)


def classify_yes_no(text: str) -> str:
    """Return "yes", "no" or "unclear". A "no" anywhere wins over a "yes"."""
    lower = _clean(text)
    if match_any_keyword(lower, NO_PHRASES) or any(p.search(lower) for p in SOMEONE_ELSE_PATTERNS):
        return "no"
    if match_any_keyword(lower, YES_PHRASES):
        return "yes"
    return "unclear"


def classify_group_answer(text: str) -> str | None:
    """Answer to a proposed group booking: "confirm", "decline" or None when unclear."""
    lower = AFFIRMING_IDIOMS.sub(" ", _clean(text))
    if match_any_keyword(lower, GROUP_DECLINE_PHRASES):
        return "decline"
    if match_any_keyword(lower, GROUP_CONFIRM_PHRASES) or AFFIRMING_IDIOMS.search(_clean(text)):
        return "confirm"
    return None


def classify_booking_for(text: str) -> str | None:
    """Answer to "is this booking for yourself or someone else?".

    Returns "someone_else", "myself" or None when the answer is unclear.
    Someone-else signals win, so "yes, for my daughter" is someone_else.
    """
    lower = _clean(text)
    if not lower:
        return None
    if match_any_keyword(lower, NO_PHRASES) or any(p.search(lower) for p in SOMEONE_ELSE_PATTERNS):
        return "someone_else"
    if match_any_keyword(lower, MYSELF_PHRASES):
        return "myself"
    return None


def detect_group_booking(text: str) -> bool:
    lower = _clean(text)
    return any(p.search(lower) for p in GROUP_BOOKING_PATTERNS)


def _looks_like_name(word: str) -> bool:
    lower = word.lower()
    return (
        len(word) >= 2
        and word[0].isupper()
        and lower not in NON_NAME_WORDS
        and lower not in PRONOUNS
        and lower not in RELATION_WORDS
    )


def extract_two_names(text: str) -> list[Participant] | None:
    """Pull two participant names out of "Michael and Merrick Bishop" style answers.

    Takes up to two capitalized name-like words on each side of the first
    "and". Relies on the transcript capitalizing names.
    """
    words = re.findall(r"[A-Za-z][A-Za-z'\-]*", text)
    lowered = [w.lower() for w in words]
    if "and" not in lowered:
        return None
    i = lowered.index("and")

    before: list[str] = []
    for word in reversed(words[:i]):
        if len(before) == 2 or not _looks_like_name(word):
            break
        before.insert(0, word)
    after: list[str] = []
    for word in words[i + 1:]:
        if len(after) == 2 or not _looks_like_name(word):
            break
        after.append(word)

    first, second = " ".join(before), " ".join(after)
    if not (is_valid_person_name(first) and is_valid_person_name(second)):
        return None
    return [Participant(first, "caller"), Participant(second, "family")]


def matches_booking_invitation(reply: str) -> bool:
    return any(p.search(reply) for p in BOOKING_INVITATION_PATTERNS)


class PatternIntentClassifier:
    """Keyword/regex IntentClassifier. FAQ topics take priority over goodbye."""

    def classify(self, utterance: str) -> IntentTag:
        if not utterance or not utterance.strip():
            return IntentTag.OTHER
        if is_hangup_question(utterance):
            return IntentTag.HANGUP_QUESTION
        if is_hangup_negated(utterance):
            return IntentTag.OTHER
        if is_hangup_command(utterance):
            return IntentTag.HANGUP
        if is_faq_request(utterance):
            return IntentTag.FAQ
        if is_goodbye(utterance):
            return IntentTag.GOODBYE
        return IntentTag.OTHER
