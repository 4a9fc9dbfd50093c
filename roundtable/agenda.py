"""
Agenda (ordered discussion phases) and session profile (who facilitates).

The attribution engine reads both: the facilitator's names and organization decide
what counts as a facilitator self-introduction or an own-organization reference,
and the guide prompts of every phase count as facilitator lines when spoken.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from roundtable.config import Settings, get_settings, split_csv

logger = logging.getLogger(__name__)


@dataclass
class AgendaQuestion:
    id: str
    title: str
    description: str = ""
    time_limit_min: int = 10
    guide_prompts: list[str] = field(default_factory=list)
    ai_prompt_context: str = ""
    follow_up_prompts: list[str] = field(default_factory=list)


@dataclass
class SessionProfile:
    """Facilitator identity for one session. Names/organizations are matched case-insensitively."""

    facilitator_name: str = ""
    facilitator_aliases: list[str] = field(default_factory=list)
    organization_aliases: list[str] = field(default_factory=list)
    topic: str = ""

    @property
    def facilitator_names(self) -> list[str]:
        names = [self.facilitator_name] if self.facilitator_name else []
        return names + [a for a in self.facilitator_aliases if a]

    @property
    def facilitator_label(self) -> str:
        return self.facilitator_name or "facilitator"


# Scripted facilitator questions that recur across sessions regardless of agenda
DEFAULT_GUIDE_PHRASES: list[str] = [
    r"what does your org(?:anization)? look like",
    r"what scares you most",
    r"what's one takeaway",
    r"how does that connect",
    r"can you say more",
    r"fast[- ]forward.*years",
    r"the darker version",
    r"what needs to be true",
]


DEFAULT_AGENDA: list[AgendaQuestion] = [
    AgendaQuestion(
        id="phase-1-provocation",
        title="Phase 1: Welcome & Strategic Provocation",
        description="Introductions and strategic framing",
        time_limit_min=8,
        guide_prompts=[
            "Please introduce yourself: name, organization, role, and your biggest priority right now",
            "What's the best outcome and the worst for your organization in three to five years",
        ],
        ai_prompt_context=(
            "Opening provocation. Look for how participants view the future impact, "
            "both positive and negative scenarios, and their level of maturity."
        ),
        follow_up_prompts=[
            "What specific fears are driving your worst-case scenario?",
            "What organizational changes would be needed for your best case?",
        ],
    ),
    AgendaQuestion(
        id="phase-2-reframing",
        title="Phase 2: Reframing the Journey",
        description="Assistance, automation, amplification",
        time_limit_min=15,
        guide_prompts=["Where are you today on this spectrum and what's keeping you from amplification"],
        ai_prompt_context="Participants place themselves on the spectrum. Focus on what blocks progress.",
        follow_up_prompts=["What would need to change culturally to reach amplification?"],
    ),
    AgendaQuestion(
        id="phase-3-prioritization",
        title="Phase 3: Where To Start",
        description="Identify high-leverage systems",
        time_limit_min=15,
        guide_prompts=[
            "Which system in your org could become the place where intelligence compounds over time",
            "Where are you already producing learning exhaust but not using it",
        ],
        ai_prompt_context="Look for patterns in which systems participants pick and why.",
        follow_up_prompts=["What's preventing you from starting there today?"],
    ),
    AgendaQuestion(
        id="phase-4-backwards",
        title="Phase 4: Walking Backwards from the Future",
        description="What needs to be true today",
        time_limit_min=10,
        guide_prompts=["Where are your feedback loops incomplete or broken"],
        ai_prompt_context="Technical, cultural and organizational prerequisites.",
        follow_up_prompts=["Which of these foundations is most missing in your organization?"],
    ),
    AgendaQuestion(
        id="phase-5-commitment",
        title="Phase 5: Commitment & Close",
        description="Personal reflection and commitment to action",
        time_limit_min=5,
        guide_prompts=[
            "What's one mindset shift you're taking back",
            "What's one thing your org is underinvesting in",
        ],
        ai_prompt_context="Final reflections. Focus on concrete actions and mindset shifts.",
        follow_up_prompts=["What's your first concrete step when you get back to the office?"],
    ),
]


def _question_from_dict(raw: dict, index: int) -> AgendaQuestion:
    return AgendaQuestion(
        id=str(raw.get("id") or f"phase-{index + 1}"),
        title=str(raw.get("title") or f"Phase {index + 1}"),
        description=str(raw.get("description", "")),
        time_limit_min=int(raw.get("timeLimit", raw.get("time_limit_min", 10))),
        guide_prompts=[str(p) for p in raw.get("guidePrompts", raw.get("guide_prompts", []))],
        ai_prompt_context=str(raw.get("aiPromptContext", raw.get("ai_prompt_context", ""))),
        follow_up_prompts=[str(p) for p in raw.get("followUpPrompts", raw.get("follow_up_prompts", []))],
    )


def load_agenda(path: str | None = None) -> list[AgendaQuestion]:
    """
    Load agenda from a JSON file: either a list of questions or {"questions": [...]}.
    Empty path, unreadable file or empty list -> DEFAULT_AGENDA.
    """
    if not (path or "").strip():
        return list(DEFAULT_AGENDA)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not load agenda %s, using default: %s", path, e)
        return list(DEFAULT_AGENDA)
    raw_questions = data.get("questions", []) if isinstance(data, dict) else data
    questions = [
        _question_from_dict(q, i) for i, q in enumerate(raw_questions or []) if isinstance(q, dict)
    ]
    if not questions:
        logger.warning("Agenda %s has no questions, using default", path)
        return list(DEFAULT_AGENDA)
    logger.info("Loaded agenda %s: %d phases", path, len(questions))
    return questions


def profile_from_settings(settings: Settings | None = None) -> SessionProfile:
    settings = settings or get_settings()
    return SessionProfile(
        facilitator_name=settings.FACILITATOR_NAME.strip(),
        facilitator_aliases=split_csv(settings.FACILITATOR_ALIASES),
        organization_aliases=split_csv(settings.FACILITATOR_ORGANIZATION),
        topic=settings.SESSION_TOPIC,
    )
