"""
Text patterns for speaker-role attribution.

Patterns that mention the facilitator (name, organization, scripted questions) are
compiled per session from the SessionProfile and agenda; the rest are fixed.
"""
from __future__ import annotations

import re

from roundtable.agenda import DEFAULT_GUIDE_PHRASES, AgendaQuestion, SessionProfile
from roundtable.attribution.models import TextSignals

# Generic facilitator phrases (substring match, lowercase)
FACILITATOR_PHRASES: list[str] = [
    # Questions
    "what do you think",
    "how does that",
    "can you tell us",
    "would you share",
    "what's your experience",
    # Transitions
    "let's move on",
    "our next question",
    "moving to",
    "let's explore",
    "next topic",
    # Acknowledgments
    "thank you for sharing",
    "i appreciate that",
    "great point",
    "interesting perspective",
    "thanks for that",
    # Time management
    "we have about",
    "few more minutes",
    "time for one more",
    "let's spend",
    # Session management
    "welcome everyone",
    "before we close",
    "to summarize",
    "let me ask",
    # Clarifications
    "just to clarify",
    "what i'm hearing",
    "to build on that",
    "following up on",
]

_I = re.IGNORECASE

_TOPIC_INTRODUCTION = [
    re.compile(r"\b(let's talk about|our next topic|turning (now )?to|moving on to)\b", _I),
    re.compile(r"\b(today we'll|we're going to (talk|discuss|explore|cover)|our agenda|our focus today)\b", _I),
    re.compile(r"\bwelcome (everyone )?to (today's|our|this)\b", _I),
]
_GENERIC_FACILITATOR_ROLE = re.compile(
    r"\b(i'm|i am|i'll be) (your|the) (facilitator|moderator|host)\b|\bi'll be (facilitating|moderating)\b", _I
)
_ASKS_AUDIENCE = [
    re.compile(r"\b(what do you think|what's your view|how do you see|tell me|share with us|thoughts on)\b", _I),
    re.compile(r"\b(any questions|what questions|does anyone)\b", _I),
]
_ASKS_CLARIFICATION = re.compile(r"\b(can you clarify|what did you mean|how do you|what's your take)\b", _I)
_PARTICIPANT_FIRST_HAND = [
    re.compile(r"\b(the way we do it at|at our company|our experience at|we handle it by|at \w+, we)\b", _I),
    re.compile(r"\b(in our organization|our approach at|we've found that|our team at)\b", _I),
]
_ASKS_ABOUT_OTHERS = [
    re.compile(r"\b(how does \w+ do it|how do you at \w+|what's your experience at|how does your company)\b", _I),
    re.compile(r"\b(how do they handle it at|what's the approach at \w+|how does \w+ think about)\b", _I),
]
_SUMMARY_LANGUAGE = re.compile(r"summariz|wrap up|key takeaway|moving forward", _I)
_TRANSITION_START = re.compile(r"^(so|now|okay|alright|great|well|let's)\b", _I)
_ORG_QUESTION = re.compile(r"\b(how do you|how does|what does)\b.*\b(you|your)\b", _I)
# "I'm X" / "I am X": X must look like a name (capitalized) so "I'm not sure" is not an introduction
_INTRO_NAME = re.compile(r"\b(?:my name is)\s+([\w'-]+)|\b(?:i'm|i am)\s+([A-Z][\w'-]*)", _I)
_INTRO_AFFILIATION = re.compile(r"\b(?:i work at|i'm with|i'm from|i am from)\s+([\w'&.-]+)", _I)
# Speaker must place themselves there: "I'm on the data team at Globex group", not "we work with vendors ... org"
_COMPANY_AFFILIATION = re.compile(
    r"\b(?:i'm|i am|we're|we are)\s+(?:[\w'-]+\s+){0,4}?(?:from|at|with)\s+([\w'&.-]+)[\s\w]*?"
    r"\b(?:company|corp|inc|llc|ltd|organization|org|group|team)\b",
    _I,
)
_SHORT_QUESTION_MAX_CHARS = 200
# "at our company" is first-hand language, not an affiliation naming a company
_NOT_A_NAME = {"our", "my", "the", "a", "an", "your", "their", "his", "her", "this", "that", "its"}
_GUIDE_PROMPT_LEAD_WORDS = 6


def _alias_regex(aliases: list[str]) -> str | None:
    """Alternation of escaped aliases; apostrophes optional ("moody's" matches "moodys")."""
    parts = [re.escape(a.strip().lower()).replace("'", "'?") for a in aliases if a.strip()]
    if not parts:
        return None
    parts.sort(key=len, reverse=True)
    return "(?:" + "|".join(parts) + ")"


def _normalize(text: str) -> str:
    text = re.sub(r"[^\w'\s]", " ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def _guide_prompt_keys(agenda: list[AgendaQuestion]) -> list[str]:
    """Leading words of each scripted prompt; a line containing them is the facilitator reading the script."""
    keys = []
    for question in agenda:
        for prompt in question.guide_prompts:
            words = _normalize(prompt).split()
            if len(words) >= 3:
                keys.append(" ".join(words[:_GUIDE_PROMPT_LEAD_WORDS]))
    return keys


class PatternSet:
    """Compiled patterns for one session profile and agenda."""

    def __init__(self, profile: SessionProfile, agenda: list[AgendaQuestion] | None = None) -> None:
        self._profile = profile
        names = _alias_regex(profile.facilitator_names)
        orgs = _alias_regex(profile.organization_aliases)
        self._names_re = re.compile(r"\b" + names + r"\b", _I) if names else None
        self._orgs_re = re.compile(r"\b" + orgs + r"\b", _I) if orgs else None
        self._self_id = []
        if names:
            self._self_id.append(re.compile(r"\b(my name is|i'm|i am)\b.*\b" + names + r"\b", _I))
            self._self_id.append(re.compile(r"\b" + names + r"\b.*\b(here|facilitator|leading|moderating)\b", _I))
        self._org_reference = (
            re.compile(r"\b(at|from|we at) " + orgs + r"\b", _I) if orgs else None
        )
        self._clarify_facilitator = (
            re.compile(
                r"\b" + _alias_regex(profile.facilitator_names + profile.organization_aliases)
                + r"\b.*\b(what|how|why|can you|could you)\b",
                _I,
            )
            if names or orgs
            else None
        )
        self._guide_phrases = [re.compile(r"\b" + p, _I) for p in DEFAULT_GUIDE_PHRASES]
        self._guide_keys = _guide_prompt_keys(agenda or [])

    def _is_facilitator_name(self, token: str) -> bool:
        return bool(self._names_re and self._names_re.fullmatch(token.strip(".,!?")))

    def _is_facilitator_org(self, token: str) -> bool:
        return bool(self._orgs_re and self._orgs_re.fullmatch(token.strip(".,!?")))

    def participant_self_intro(self, text: str) -> bool:
        for m in _INTRO_NAME.finditer(text):
            by_name = m.group(1)
            by_im = m.group(2)
            # "I'm X" only counts when X is written capitalized
            if by_im is not None and not by_im[0].isupper():
                continue
            token = by_name or by_im
            if token and not self._is_facilitator_name(token):
                return True
        for pattern in (_INTRO_AFFILIATION, _COMPANY_AFFILIATION):
            for m in pattern.finditer(text):
                token = m.group(1)
                if token.lower() in _NOT_A_NAME or self._is_facilitator_org(token):
                    continue
                return True
        return False

    def facilitator_self_id(self, text: str) -> bool:
        if _GENERIC_FACILITATOR_ROLE.search(text):
            return True
        return any(p.search(text) for p in self._self_id)

    def facilitator_org_reference(self, text: str) -> bool:
        if self._org_reference is None or not self._org_reference.search(text):
            return False
        # a participant asking about the facilitator's organization is not the facilitator
        return not _ORG_QUESTION.search(text)

    def guide_question(self, text: str) -> bool:
        if any(p.search(text) for p in self._guide_phrases):
            return True
        normalized = _normalize(text)
        return any(key in normalized for key in self._guide_keys)

    def asks_facilitator_clarification(self, text: str) -> bool:
        if _ASKS_CLARIFICATION.search(text):
            return True
        return bool(self._clarify_facilitator and self._clarify_facilitator.search(text))

    def signals(self, text: str) -> TextSignals:
        lower = text.lower()
        stripped = text.strip()
        is_short_question = stripped.endswith("?") and len(stripped) < _SHORT_QUESTION_MAX_CHARS
        return TextSignals(
            participant_self_intro=self.participant_self_intro(text),
            facilitator_self_id=self.facilitator_self_id(text),
            facilitator_org_reference=self.facilitator_org_reference(text),
            topic_introduction=any(p.search(text) for p in _TOPIC_INTRODUCTION),
            guide_question=self.guide_question(text),
            asks_audience=any(p.search(text) for p in _ASKS_AUDIENCE),
            asks_facilitator_clarification=self.asks_facilitator_clarification(text),
            participant_first_hand=any(p.search(text) for p in _PARTICIPANT_FIRST_HAND),
            facilitator_phrase=(
                any(phrase in lower for phrase in FACILITATOR_PHRASES)
                or any(p.search(text) for p in _ASKS_ABOUT_OTHERS)
                or bool(_SUMMARY_LANGUAGE.search(text))
            ),
            transition_question=is_short_question and bool(_TRANSITION_START.search(stripped)),
        )
