"""
Server side of the analysis endpoints: prompt building, rate limiting and the
Cloudflare Workers AI call.

- LIVE (/api/analyze-live): numbered plain-text output per analysis type; strict JSON envelope.
- LEGACY (/api/analyze): transcript-grounded prompt; free-form `insights` text.
- SPEAKERS (/api/identify-speakers): two JSON passes, introductions first, then one
  suggested label per entry. Suggestions are returned for review, never applied here.
- SUMMARY (/api/generate-summary): one JSON summary per agenda section, an executive
  summary over those, and a narrative conclusion. A failed step degrades to placeholder
  text so the report is always complete.

All of them share one per-client rate limit (fixed one-hour window).
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from roundtable.config import Settings, get_settings
from roundtable.errors import AnalysisError, RateLimitExceededError
from roundtable.models import Clock, clamp_confidence, now_ms
from roundtable.schemas.analysis import (
    ExecutiveSummary,
    GenerateSummaryRequest,
    GenerateSummaryResponse,
    IdentifiedSpeaker,
    IdentifySpeakersRequest,
    IdentifySpeakersResponse,
    LegacyAnalyzeRequest,
    LegacyAnalyzeResponse,
    LiveAnalyzeRequest,
    LiveAnalyzeResponse,
    QuestionSummary,
    SessionOverview,
    SpeakerEntryInput,
    SpeakerSuggestionOut,
    SummaryEntryInput,
    SummarySectionInput,
)

logger = logging.getLogger(__name__)

LIVE_CONFIDENCE = 0.85
MAX_SUGGESTIONS = 5
_WINDOW_MS = 60 * 60 * 1000

_LIVE_SYSTEM_PROMPT = (
    "You are an expert facilitator providing real-time analysis. Always respond with factual, "
    "actionable insights based strictly on provided content. Never fabricate details."
)

_LEGACY_SYSTEM_PROMPT = (
    "You are an expert AI co-facilitator for a strategic roundtable. Be concise and specific. "
    "Never invent participant names, quotes or facts."
)

_LIVE_TASKS = {
    "insights": """You are analyzing a business discussion transcript. Provide exactly 4 numbered points:

TRANSCRIPT:
{transcript}

RESPONSE FORMAT:
1. Key theme: [your analysis]
2. Pattern observed: [your observation]
3. Important quote: [exact quote from transcript]
4. Recommended next step: [your recommendation]

Respond with only plain text. Use the exact numbering shown above.""",
    "followup": """Generate 4 strategic follow-up questions based on this transcript:

TRANSCRIPT:
{transcript}

RESPONSE FORMAT:
1. [question]
2. [question]
3. [question]
4. [question]

Respond with only plain text questions.""",
    "synthesis": """Synthesize this discussion into key strategic takeaways:

TRANSCRIPT:
{transcript}

Provide 4 numbered strategic themes and recommendations.""",
    "executive": """Write an executive summary of this discussion for senior leadership:

TRANSCRIPT:
{transcript}

Provide 4 numbered points: the core decision or tension, the strongest evidence raised,
the main risk, and the recommended commitment. Respond with only plain text.""",
    "facilitation": """You are coaching the facilitator of this discussion:

TRANSCRIPT:
{transcript}

Suggest how to move the conversation forward. Give each suggestion on its own line starting with "- ".""",
}

_LEGACY_TASKS = {
    "synthesis": "Synthesize the key themes from the CURRENT TRANSCRIPT into 3-4 bullet points. "
    "If the transcript is empty, state that no synthesis is possible yet.",
    "followup": "Generate 2 probing follow-up questions based directly on statements in the CURRENT "
    "TRANSCRIPT. If the transcript is empty, suggest 2 general opening questions related to the Session Context.",
    "executive": "Summarize the CURRENT TRANSCRIPT for senior leadership in 3-4 bullet points. "
    "If the transcript is empty, state that no summary is possible yet.",
    "insights": "Identify 2-3 key strategic insights or patterns emerging from the CURRENT TRANSCRIPT. "
    "If the transcript is empty, state that insights will be generated once comments are added.",
}


_SPEAKER_SYSTEM_PROMPT = (
    "You identify speakers in meeting transcripts. Use only what is explicitly said in the transcript. "
    "Answer with a single JSON object and nothing else."
)

_IDENTIFY_SPEAKERS_TASK = """Analyze this transcript to identify speakers from their introductions and speaking patterns.

TRANSCRIPT:
{transcript}

Find every self-introduction where someone states their name, organization or role, and note
references to other speakers by name.

Output a JSON object with this structure:
{{
  "identifiedSpeakers": [
    {{
      "name": "Actual name if mentioned",
      "organization": "Their organization if mentioned",
      "role": "Their role if mentioned",
      "firstMentionIndex": 0,
      "speakingCharacteristics": "Notable patterns in their speech"
    }}
  ]
}}

Only include information explicitly stated in the transcript. Do not invent details."""

_ATTRIBUTE_SPEAKERS_TASK = """Suggest a speaker for each transcript entry, using the speakers identified earlier.

IDENTIFIED SPEAKERS:
{speakers}

TRANSCRIPT ENTRIES TO ATTRIBUTE:
{entries}

ATTRIBUTION RULES:
1. An entry where someone introduces themselves is theirs.
2. Use contextual clues such as "as I mentioned earlier" or "in my organization".
3. If uncertain, keep the current label.
4. The facilitator asks questions and guides the discussion.

Output a JSON object:
{{
  "attributions": [
    {{"index": 0, "suggestedSpeaker": "Name or current label", "confidence": 0.0, "reasoning": "Brief explanation"}}
  ]
}}"""

_SECTION_SYSTEM_PROMPT = (
    "You are an expert strategic facilitator who writes narrative summaries of executive discussions. "
    "Answer with a single JSON object and nothing else."
)

_SECTION_TASK = """Analyze this discussion section and summarize it.

QUESTION ANALYZED:
Title: {title}
Question: {question}
Facilitator Context: {guidance}

PARTICIPANT RESPONSES:
{responses}

AI INSIGHTS GENERATED:
{insights}

Format your response as JSON with exactly this structure:
{{
  "keyThemes": ["3-5 main themes"],
  "narrativeSummary": "2-3 paragraphs telling the story of the discussion, no bullet points",
  "criticalInsights": ["3-5 strategic insights"],
  "emergingConcerns": ["2-4 risks or concerns raised"],
  "strategicImplications": ["2-4 implications for the organization"]
}}"""

_EXECUTIVE_SYSTEM_PROMPT = (
    "You are a senior executive strategy consultant. Write executive-level summaries focused on "
    "strategic impact and actionable next steps. Answer with a single JSON object and nothing else."
)

_EXECUTIVE_TASK = """Create an executive summary of this roundtable session{topic}.

SESSION DATA:
- Sections addressed: {section_count}
- Responses captured: {response_count}
- Key insights: {insights}
- Concerns raised: {concerns}
- Strategic implications: {implications}

SECTION SUMMARIES:
{summaries}

Format as JSON:
{{
  "keyFindings": ["4-6 strategic findings"],
  "strategicRecommendations": ["4-6 actionable recommendations"],
  "nextSteps": ["3-5 immediate next steps"],
  "riskFactors": ["3-4 risks to monitor"]
}}"""

_CONCLUSION_SYSTEM_PROMPT = (
    "You are an expert strategic facilitator who writes narrative conclusions of leadership discussions "
    "for senior stakeholders."
)

_CONCLUSION_TASK = """Write a 3-4 paragraph narrative conclusion for this roundtable session{topic}.

SESSION CONTEXT:
- Duration: {duration}
- Sections explored: {section_count}
- Total contributions: {response_count}

SECTION SUMMARIES:
{summaries}

Capture the overall quality of the conversation, the most significant themes across sections,
the readiness of the group, and a forward-looking view of next steps. Respond with plain text."""

NO_RESPONSES_SUMMARY = "No responses were captured for this question during the session."
FALLBACK_CONCLUSION = (
    "This roundtable session provided valuable insights into organizational readiness and strategic "
    "priorities. The discussion revealed both opportunities and challenges that will inform the path forward."
)
FALLBACK_EXECUTIVE = ExecutiveSummary(
    keyFindings=["Leadership engaged in the discussion", "Multiple perspectives on organizational readiness"],
    strategicRecommendations=["Continue structured planning", "Address the readiness gaps that were raised"],
    nextSteps=["Review session insights with stakeholders", "Schedule a follow-up planning session"],
    riskFactors=["Resistance to change", "Resource allocation"],
    isFallback=True,
)
_FENCE_START = re.compile(r"^```(?:json)?\s*")
_FENCE_END = re.compile(r"\s*```\s*$")


class RateLimiter:
    """Fixed window per client: `limit` requests, window starts at the first request."""

    def __init__(self, limit: int, window_ms: int = _WINDOW_MS, clock: Clock = time.time) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._clock = clock
        self._windows: dict[str, tuple[int, int]] = {}  # client -> (count, reset_at_ms)

    def check(self, client_id: str) -> bool:
        """Count one request. False when the client is over its limit."""
        now = now_ms(self._clock)
        count, reset_at = self._windows.get(client_id, (0, 0))
        if now > reset_at:
            self._windows[client_id] = (1, now + self.window_ms)
            return True
        if count >= self.limit:
            return False
        self._windows[client_id] = (count + 1, reset_at)
        return True

    def clear(self) -> None:
        self._windows.clear()


def build_live_prompt(analysis_type: str, transcript: str) -> str:
    template = _LIVE_TASKS.get(analysis_type, _LIVE_TASKS["insights"])
    return template.format(transcript=transcript)


def build_legacy_prompt(analysis_type: str, context: str, transcript: str) -> str:
    """Transcript-grounded prompt; empty transcript gets an explicit placeholder line."""
    body = (transcript or "").strip() or "No comments have been added to the transcript for this question yet."
    task = _LEGACY_TASKS.get(analysis_type, _LEGACY_TASKS["insights"])
    return (
        "Your entire response MUST be grounded ONLY in the CURRENT TRANSCRIPT. "
        "Do NOT invent, assume, or reference outside information.\n"
        f'Session Context: The current question is about "{context}".\n'
        f"CURRENT TRANSCRIPT:\n{body}\n"
        f"Your Task: {task}"
    )


def extract_suggestions(content: str) -> list[str]:
    """Lines starting with '-' become suggestions (at most MAX_SUGGESTIONS)."""
    lines = [line.strip() for line in content.splitlines() if line.strip().startswith("-")]
    return [line.lstrip("-").strip() for line in lines[:MAX_SUGGESTIONS]]


def _parse_workers_ai(data: dict) -> str:
    # Workers AI returns { "result": { "response": "..." } } or direct { "response": "..." }
    result = data.get("result", data)
    if isinstance(result, dict):
        content = result.get("response", "") or ""
    elif isinstance(result, str):
        content = result
    else:
        content = ""
    return (content or "").strip()


def extract_json_object(raw: str) -> dict[str, Any]:
    """JSON object from a model answer (may be wrapped in a markdown code block or short prose)."""
    raw = raw.strip()
    if raw.startswith("```"):
        raw = _FENCE_END.sub("", _FENCE_START.sub("", raw))
    if not raw.startswith("{"):
        start, end = raw.find("{"), raw.rfind("}")
        if start != -1 and end > start:
            raw = raw[start:end + 1]
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def number_entries(entries: list[SpeakerEntryInput]) -> str:
    return "\n".join(f'[{i}] Current label: "{e.speaker}" | Text: "{e.text}"' for i, e in enumerate(entries))


def build_identification_prompt(entries: list[SpeakerEntryInput]) -> str:
    transcript = "\n".join(f"[{i}] {e.speaker}: {e.text}" for i, e in enumerate(entries))
    return _IDENTIFY_SPEAKERS_TASK.format(transcript=transcript)


def build_attribution_prompt(speakers: list[IdentifiedSpeaker], entries: list[SpeakerEntryInput]) -> str:
    known = json.dumps([s.model_dump(exclude_none=True) for s in speakers], indent=2, ensure_ascii=False)
    return _ATTRIBUTE_SPEAKERS_TASK.format(speakers=known, entries=number_entries(entries))


def parse_identified_speakers(raw: Any) -> list[IdentifiedSpeaker]:
    """Named speakers only; malformed items are skipped."""
    if not isinstance(raw, list):
        return []
    speakers = []
    for item in raw:
        if not isinstance(item, dict) or not _optional_str(item.get("name")):
            continue
        speakers.append(
            IdentifiedSpeaker(
                name=_optional_str(item.get("name")),
                organization=_optional_str(item.get("organization")),
                role=_optional_str(item.get("role")),
                firstMentionIndex=_optional_int(item.get("firstMentionIndex")),
                speakingCharacteristics=_optional_str(item.get("speakingCharacteristics")),
            )
        )
    return speakers


def parse_attributions(raw: Any, entries: list[SpeakerEntryInput], offset: int = 0) -> list[SpeakerSuggestionOut]:
    """
    Suggestions that would change an entry's label, one per entry (first wins), in transcript
    order. `index` in the model answer is relative to `entries`; `offset` shifts it back to the
    position in the submitted transcript.
    """
    if not isinstance(raw, list):
        return []
    by_index: dict[int, SpeakerSuggestionOut] = {}
    for item in raw:
        if not isinstance(item, dict):
            continue
        index = _optional_int(item.get("index"))
        if index is None or not 0 <= index < len(entries) or index in by_index:
            continue
        entry = entries[index]
        suggested = _optional_str(item.get("suggestedSpeaker"))
        if suggested is None or suggested == entry.speaker:
            continue
        try:
            confidence = clamp_confidence(item.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        by_index[index] = SpeakerSuggestionOut(
            index=index + offset,
            entryId=entry.id,
            currentSpeaker=entry.speaker,
            suggestedSpeaker=suggested,
            confidence=confidence,
            reasoning=_optional_str(item.get("reasoning")) or "",
        )
    return [by_index[i] for i in sorted(by_index)]


def count_speakers(entries: list[SummaryEntryInput]) -> int:
    return len({(e.speaker or "").strip() or "Anonymous" for e in entries})


def format_duration(start_ms: int | None, end_ms: int) -> str:
    """'1h 5m' or '12m'; no start time counts as zero."""
    if start_ms is None:
        return "0m"
    hours, minutes = divmod(max(0, end_ms - start_ms) // 60000, 60)
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def engagement_level(response_count: int, section_count: int) -> str:
    if response_count > section_count * 2:
        return "High"
    if response_count > section_count:
        return "Moderate"
    return "Light"


def build_section_prompt(section: SummarySectionInput) -> str:
    return _SECTION_TASK.format(
        title=section.title,
        question=section.question or section.title,
        guidance=section.facilitatorGuidance or "N/A",
        responses="\n\n".join(f"{e.speaker or 'Participant'}: {e.text}" for e in section.entries),
        insights="\n\n".join(section.insights) or "None",
    )


def _topic_suffix(topic: str) -> str:
    return f' on "{topic}"' if topic else ""


def _summaries_block(summaries: list[QuestionSummary]) -> str:
    return "\n\n".join(
        f"{q.questionTitle}: {q.narrativeSummary}\nKey Themes: {', '.join(q.keyThemes)}" for q in summaries
    )


def build_executive_prompt(req: GenerateSummaryRequest, summaries: list[QuestionSummary]) -> str:
    return _EXECUTIVE_TASK.format(
        topic=_topic_suffix(req.topic),
        section_count=len(summaries),
        response_count=sum(len(s.entries) for s in req.sections),
        insights="; ".join(i for q in summaries for i in q.criticalInsights) or "None",
        concerns="; ".join(c for q in summaries for c in q.emergingConcerns) or "None",
        implications="; ".join(i for q in summaries for i in q.strategicImplications) or "None",
        summaries=_summaries_block(summaries),
    )


def build_conclusion_prompt(req: GenerateSummaryRequest, summaries: list[QuestionSummary], duration: str) -> str:
    return _CONCLUSION_TASK.format(
        topic=_topic_suffix(req.topic),
        duration=duration,
        section_count=len(summaries),
        response_count=sum(len(s.entries) for s in req.sections),
        summaries=_summaries_block(summaries),
    )


def fallback_section_summary(section: SummarySectionInput) -> QuestionSummary:
    return QuestionSummary(
        questionId=section.questionId,
        questionTitle=section.title,
        questionText=section.question,
        participantCount=count_speakers(section.entries),
        keyThemes=["Discussion captured"],
        narrativeSummary=(
            f"This section focused on {section.title.lower()}. {len(section.entries)} contributions "
            "were captured from participants."
        ),
        criticalInsights=["Multiple perspectives shared"],
        emergingConcerns=["Further analysis needed"],
        strategicImplications=["Continued discussion recommended"],
        isFallback=True,
    )


class AnalysisService:
    """Runs analysis prompts against Cloudflare Workers AI."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self._clock = clock
        self.rate_limiter = RateLimiter(self.settings.ANALYZE_RATE_LIMIT_PER_HOUR, clock=clock)

    def _auth(self) -> tuple[str, str]:
        account_id = (self.settings.CLOUDFLARE_ACCOUNT_ID or "").strip()
        token = (self.settings.CLOUDFLARE_API_TOKEN or "").strip()
        if not account_id or not token:
            raise AnalysisError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN are required for analysis")
        return account_id, token

    async def _complete(
        self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int | None = None
    ) -> str:
        """One chat completion. Raises AnalysisError on auth, HTTP or empty-response problems."""
        account_id, token = self._auth()
        url = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/{self.settings.ANALYZE_CF_MODEL}"
        payload = {
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens or self.settings.ANALYZE_MAX_TOKENS,
            "temperature": temperature,
        }
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, headers=headers, timeout=60.0)
                resp.raise_for_status()
                data = resp.json()
            else:
                async with httpx.AsyncClient(timeout=60.0) as client:
                    resp = await client.post(url, json=payload, headers=headers)
                    resp.raise_for_status()
                    data = resp.json()
        except httpx.HTTPError as e:
            logger.warning("Workers AI request failed: %s", e)
            raise AnalysisError(f"Workers AI request failed: {e}") from e
        except ValueError as e:
            raise AnalysisError("Workers AI returned invalid JSON") from e
        content = _parse_workers_ai(data) if isinstance(data, dict) else ""
        if not content:
            raise AnalysisError("Cloudflare Workers AI returned empty response")
        return content

    def _check_rate(self, client_id: str) -> None:
        if not self.rate_limiter.check(client_id):
            logger.warning("Rate limit exceeded for client %s", client_id)
            raise RateLimitExceededError(client_id)

    async def analyze_live(self, req: LiveAnalyzeRequest) -> LiveAnalyzeResponse:
        self._check_rate(req.clientId)
        logger.info(
            "Live analysis: type=%s topic=%r transcript=%d chars",
            req.analysisType, req.sessionTopic, len(req.liveTranscript),
        )
        content = await self._complete(
            _LIVE_SYSTEM_PROMPT, build_live_prompt(req.analysisType, req.liveTranscript), temperature=0.3
        )
        suggestions = None
        if req.analysisType in ("followup", "facilitation"):
            suggestions = extract_suggestions(content)
        return LiveAnalyzeResponse(
            success=True,
            content=content,
            analysisType=req.analysisType,
            confidence=LIVE_CONFIDENCE,
            suggestions=suggestions,
            metadata={
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "sessionTopic": req.sessionTopic,
                "transcriptLength": len(req.liveTranscript),
                "model": self.settings.ANALYZE_CF_MODEL,
            },
        )

    async def analyze_legacy(self, req: LegacyAnalyzeRequest, client_id: str = "anonymous") -> LegacyAnalyzeResponse:
        self._check_rate(client_id)
        logger.info("Legacy analysis: type=%s context=%r", req.analysisType, req.questionContext)
        content = await self._complete(
            _LEGACY_SYSTEM_PROMPT,
            build_legacy_prompt(req.analysisType, req.questionContext, req.currentTranscript),
            temperature=0.7,
        )
        return LegacyAnalyzeResponse(
            insights=content,
            analysisType=req.analysisType,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    async def _complete_json(
        self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int | None = None
    ) -> dict[str, Any]:
        content = await self._complete(system_prompt, user_prompt, temperature, max_tokens=max_tokens)
        try:
            return extract_json_object(content)
        except ValueError as e:
            logger.warning("Workers AI answer is not a JSON object: %.200s", content)
            raise AnalysisError("Workers AI returned a non-JSON answer") from e

    async def identify_speakers(
        self, req: IdentifySpeakersRequest, client_id: str = "anonymous"
    ) -> IdentifySpeakersResponse:
        """
        Suggest speaker names for transcript entries. Only the most recent
        IDENTIFY_SPEAKERS_MAX_ENTRIES entries are sent; suggestion indexes still refer to
        positions in req.transcript. Raises AnalysisError when either pass fails.
        """
        self._check_rate(client_id)
        entries = req.transcript[-self.settings.IDENTIFY_SPEAKERS_MAX_ENTRIES:]
        offset = len(req.transcript) - len(entries)
        logger.info("Speaker identification: %d entries (%d skipped)", len(entries), offset)

        found = await self._complete_json(
            _SPEAKER_SYSTEM_PROMPT, build_identification_prompt(entries), temperature=0.3
        )
        speakers = parse_identified_speakers(found.get("identifiedSpeakers"))
        attributed = await self._complete_json(
            _SPEAKER_SYSTEM_PROMPT, build_attribution_prompt(speakers, entries), temperature=0.3
        )
        suggestions = parse_attributions(attributed.get("attributions"), entries, offset=offset)
        logger.info("Speaker identification: %d speakers, %d suggestions", len(speakers), len(suggestions))
        return IdentifySpeakersResponse(identifiedSpeakers=speakers, attributions=suggestions)

    async def _summarize_section(self, section: SummarySectionInput) -> QuestionSummary:
        if not section.entries:
            return QuestionSummary(
                questionId=section.questionId,
                questionTitle=section.title,
                questionText=section.question,
                narrativeSummary=NO_RESPONSES_SUMMARY,
            )
        try:
            data = await self._complete_json(
                _SECTION_SYSTEM_PROMPT,
                build_section_prompt(section),
                temperature=0.3,
                max_tokens=self.settings.SUMMARY_MAX_TOKENS,
            )
        except AnalysisError as e:
            logger.warning("Summary for question %s failed, using placeholder: %s", section.questionId, e)
            return fallback_section_summary(section)
        return QuestionSummary(
            questionId=section.questionId,
            questionTitle=section.title,
            questionText=section.question,
            participantCount=count_speakers(section.entries),
            keyThemes=_string_list(data.get("keyThemes")),
            narrativeSummary=_optional_str(data.get("narrativeSummary")) or "",
            criticalInsights=_string_list(data.get("criticalInsights")),
            emergingConcerns=_string_list(data.get("emergingConcerns")),
            strategicImplications=_string_list(data.get("strategicImplications")),
        )

    async def _executive_summary(
        self, req: GenerateSummaryRequest, summaries: list[QuestionSummary]
    ) -> ExecutiveSummary:
        try:
            data = await self._complete_json(
                _EXECUTIVE_SYSTEM_PROMPT, build_executive_prompt(req, summaries), temperature=0.3
            )
        except AnalysisError as e:
            logger.warning("Executive summary failed, using placeholder: %s", e)
            return FALLBACK_EXECUTIVE.model_copy(deep=True)
        return ExecutiveSummary(
            keyFindings=_string_list(data.get("keyFindings")),
            strategicRecommendations=_string_list(data.get("strategicRecommendations")),
            nextSteps=_string_list(data.get("nextSteps")),
            riskFactors=_string_list(data.get("riskFactors")),
        )

    async def _conclusion(self, req: GenerateSummaryRequest, summaries: list[QuestionSummary], duration: str) -> str:
        try:
            return await self._complete(
                _CONCLUSION_SYSTEM_PROMPT, build_conclusion_prompt(req, summaries, duration), temperature=0.4
            )
        except AnalysisError as e:
            logger.warning("Summary conclusion failed, using placeholder: %s", e)
            return FALLBACK_CONCLUSION

    async def generate_summary(
        self, req: GenerateSummaryRequest, client_id: str = "anonymous"
    ) -> GenerateSummaryResponse:
        """End-of-session report. Counts as one request against the rate limit."""
        self._check_rate(client_id)
        # missing credentials are an error, not a placeholder report
        self._auth()
        logger.info("Session summary: %d sections, topic=%r", len(req.sections), req.topic)

        summaries = list(await asyncio.gather(*(self._summarize_section(s) for s in req.sections)))
        duration = format_duration(req.startTime, now_ms(self._clock))
        executive = await self._executive_summary(req, summaries)
        conclusion = await self._conclusion(req, summaries, duration)

        all_entries = [e for s in req.sections for e in s.entries]
        overview = SessionOverview(
            totalParticipants=count_speakers(all_entries),
            questionsCompleted=len(req.sections) if req.questionsCompleted is None else req.questionsCompleted,
            sessionDuration=duration,
            overallEngagement=engagement_level(len(all_entries), len(req.sections)),
        )
        return GenerateSummaryResponse(
            sessionOverview=overview,
            questionSummaries=summaries,
            executiveSummary=executive,
            fullNarrativeConclusion=conclusion,
        )
