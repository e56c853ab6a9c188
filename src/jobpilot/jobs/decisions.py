"""Mine design decisions and a confidence score from an agent transcript.

Agents are prompted to emit delimited blocks::

    <<<DECISION>>>
    ACTION: Use SQLite for the job table
    REASONING: Single-process service, no server to run
    ALTERNATIVES: Postgres; flat JSON files
    CATEGORY: storage
    <<<END_DECISION>>>

    <<<CONFIDENCE>>>
    SCORE: 0.85
    ASSESSMENT: Solid, small change
    REASONING: Covered by existing tests
    RISKS: Migration not exercised
    <<<END_CONFIDENCE>>>

When no blocks are present the transcript is scanned sentence by sentence
for phrasing like "Using X to Y" or "I chose X because Y". Nothing here
raises on malformed input: the worst case is an empty result.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import structlog

from jobpilot.jobs.transcript import reconstruct_transcript
from jobpilot.models import ConfidenceAssessment, DecisionCategory, JobDecision
from jobpilot.store import normalize_action

if TYPE_CHECKING:
    from jobpilot.models import Job
    from jobpilot.store import JobStore

logger = structlog.get_logger()

MIN_ACTION_LEN, MAX_ACTION_LEN = 3, 300
MIN_REASONING_LEN, MAX_REASONING_LEN = 5, 500
MAX_ALTERNATIVE_LEN = 100

DECISION_BLOCK_RE = re.compile(
    r"<<<DECISION>>>\s*ACTION:\s*(.+?)\s*REASONING:\s*(.+?)\s*"
    r"(?:ALTERNATIVES:\s*(.+?)\s*)?(?:CATEGORY:\s*(\w+)\s*)?<<<END_DECISION>>>",
    re.DOTALL,
)

LEGACY_DECISION_RE = re.compile(
    r"DECISION:\s*(.+?)[\n\r]+REASONING:\s*(.+?)[\n\r]+"
    r"(?:ALTERNATIVES:\s*(.+?)[\n\r]+)?(?:CATEGORY:\s*(.+?))?(?:[\n\r]{2}|$)",
    re.DOTALL,
)

CONFIDENCE_BLOCK_RE = re.compile(
    r"<<<CONFIDENCE>>>\s*SCORE:\s*([\d.]+)\s*ASSESSMENT:\s*(.+?)\s*REASONING:\s*(.+?)\s*"
    r"(?:RISKS:\s*(.+?)\s*)?<<<END_CONFIDENCE>>>",
    re.DOTALL,
)

SENTENCE_SPLIT_RE = re.compile(r"[.!?\n]")


class DecisionTemplate(NamedTuple):
    pattern: re.Pattern[str]
    action_group: int
    reason_group: int


def _template(pattern: str, action_group: int = 1, reason_group: int = 2) -> DecisionTemplate:
    return DecisionTemplate(re.compile(pattern, re.IGNORECASE), action_group, reason_group)


_END = r"(?:\.|$)"

# Tried in order; the first acceptable match wins for a sentence.
DECISION_TEMPLATES: list[DecisionTemplate] = [
    # Explicit "because"
    _template(rf"I'll\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"I'm going to\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"I chose\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"I decided to\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"I'm opting for\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"The best approach is\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"(.+?)\s+is better (?:here\s+)?because\s+(.+?){_END}"),
    _template(rf"Let's use\s+(.+?)\s+because\s+(.+?){_END}"),
    # Purpose with "to"/"for"
    _template(rf"Uses\s+(.+?)\s+to\s+(.+?){_END}"),
    _template(rf"Using\s+(.+?)\s+to\s+(.+?){_END}"),
    _template(rf"Added\s+(.+?)\s+to\s+(.+?){_END}"),
    _template(rf"Added\s+(.+?)\s+for\s+(.+?){_END}"),
    _template(rf"I decided to\s+(.+?)\s+to\s+(.+?){_END}"),
    # Implicit "because"/"since"
    _template(rf"Using\s+(.+?)\s+because\s+(.+?){_END}"),
    _template(rf"Using\s+(.+?)\s+since\s+(.+?){_END}"),
    _template(rf"I'll use\s+(.+?)\s+since\s+(.+?){_END}"),
    _template(rf"Went with\s+(.+?)\s+(?:since|for|because)\s+(.+?){_END}"),
    _template(rf"(.+?)\s+approach\s+(?:for|because|since)\s+(.+?){_END}"),
    # Implementation notes
    _template(rf"Implemented\s+(.+?)\s+using\s+(.+?){_END}"),
    _template(rf"Wrapped\s+(.+?)\s+with\s+(.+?)\s+to\s+.+?{_END}"),
    _template(rf"with\s+(.+?)\s+to\s+(?:preserve|enable|allow|ensure|maintain|support)\s+(.+?){_END}"),
    # Comparisons
    _template(rf"(.+?)\s+instead of\s+.+?\s+(?:because|since|for)\s+(.+?){_END}"),
    _template(rf"(.+?)\s+rather than\s+.+?\s+(?:because|since|for)\s+(.+?){_END}"),
    _template(rf"Opted for\s+(.+?)\s+(?:because|since|for)\s+(.+?){_END}"),
    _template(rf"Opted for\s+(.+?)\s+to\s+(.+?){_END}"),
    # Things built
    _template(rf"Created\s+(.+?)\s+to\s+(.+?){_END}"),
    _template(rf"Built\s+(.+?)\s+to\s+(.+?){_END}"),
    _template(rf"Set up\s+(.+?)\s+to\s+(.+?){_END}"),
]

ALTERNATIVE_PATTERNS = [
    re.compile(r"chose\s+.+?\s+over\s+(.+?)\s+(?:because|since|due)", re.IGNORECASE),
    re.compile(r"instead of\s+(.+?)[,\s]+(?:I|because|since)", re.IGNORECASE),
    re.compile(r"rather than\s+(.+?)[,\s]+(?:I|because|since)", re.IGNORECASE),
]

HEDGING_PHRASES = (
    "might want to consider",
    "might consider",
    "one option could be",
    "could potentially",
    "might be worth",
    "could consider",
    "may want to",
    "possibly",
    "perhaps",
)

# Checked in order, UI first since its terms are the most specific.
CATEGORY_KEYWORDS: list[tuple[DecisionCategory, tuple[str, ...]]] = [
    (DecisionCategory.UI, (
        "widget", "view", "scaffold", "container", "listview", "gridview", "pageview",
        "scrollview", "customscroll", "sliver", "refreshindicator", "gesture", "swip",
        "pull", "animation", "transition", "layout", "padding", "margin", "stack",
    )),
    (DecisionCategory.ARCHITECTURE, (
        "architect", "structure", "layer", "separation", "service class", "component",
    )),
    (DecisionCategory.LIBRARY, (
        "package", "library", "dependency", "import", " dio ", " http ", "provider", "riverpod",
    )),
    (DecisionCategory.PATTERN, ("pattern", "singleton", "factory", "repository", "mvc", "mvvm")),
    (DecisionCategory.STORAGE, ("sqlite", "database", "storage", "cache", "preferences", "persist")),
    (DecisionCategory.API, ("api", "endpoint", "rest", "request", "response")),
    (DecisionCategory.TESTING, ("test", "mock", "spec", "coverage")),
]


def normalize_newlines(text: str) -> str:
    """Turn literal ``\\n`` escapes left in logs into real newlines."""
    return text.replace("\\\\n", "\n").replace("\\n", "\n")


def categorize(action: str, reasoning: str) -> DecisionCategory:
    combined = f"{action} {reasoning}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in combined for keyword in keywords):
            return category
    return DecisionCategory.OTHER


def _capitalize(text: str) -> str:
    text = text.strip()
    return text[:1].upper() + text[1:]


def clean_action(action: str) -> str:
    return _capitalize(action)


def clean_reasoning(reasoning: str) -> str:
    cleaned = _capitalize(reasoning)
    if cleaned.endswith((",", ";")):
        cleaned = cleaned[:-1]
    return cleaned


def split_list(text: str | None) -> list[str] | None:
    """Semicolon-separated list; ``None`` for empty or "none ..." values."""
    if not text:
        return None
    text = text.strip()
    if not text or text.lower().startswith("none"):
        return None
    items = [item.strip() for item in text.split(";")]
    return [item for item in items if item] or None


def _resolve_category(raw: str | None, action: str, reasoning: str) -> DecisionCategory:
    if raw:
        try:
            return DecisionCategory(raw.strip().lower())
        except ValueError:
            pass
    return categorize(action, reasoning)


def _block_decisions(pattern: re.Pattern[str], text: str, job_id: str) -> list[JobDecision]:
    decisions = []
    for match in pattern.finditer(text):
        action = match.group(1).strip()
        reasoning = match.group(2).strip()
        decisions.append(
            JobDecision(
                job_id=job_id,
                action=clean_action(action),
                reasoning=clean_reasoning(reasoning),
                alternatives=split_list(match.group(3)),
                category=_resolve_category(match.group(4), action, reasoning),
            )
        )
    return decisions


def extract_structured_decisions(text: str, job_id: str) -> list[JobDecision]:
    """Delimited ``<<<DECISION>>>`` blocks, else the older ``DECISION:`` form."""
    decisions = _block_decisions(DECISION_BLOCK_RE, normalize_newlines(text), job_id)
    if not decisions:
        decisions = _block_decisions(LEGACY_DECISION_RE, text, job_id)
    return decisions


def extract_alternatives(sentence: str) -> list[str]:
    alternatives = []
    for pattern in ALTERNATIVE_PATTERNS:
        for match in pattern.finditer(sentence):
            alt = match.group(1).strip()
            if alt and len(alt) < MAX_ALTERNATIVE_LEN:
                alternatives.append(alt)
    return alternatives


def extract_natural_language_decisions(text: str, job_id: str) -> list[JobDecision]:
    decisions: list[JobDecision] = []
    seen: set[str] = set()

    for raw_sentence in SENTENCE_SPLIT_RE.split(text):
        sentence = raw_sentence.strip()
        if not sentence:
            continue
        lowered = sentence.lower()
        if any(phrase in lowered for phrase in HEDGING_PHRASES):
            continue

        for template in DECISION_TEMPLATES:
            match = template.pattern.search(sentence)
            if match is None:
                continue
            action = match.group(template.action_group).strip()
            reasoning = match.group(template.reason_group).strip()
            if not MIN_ACTION_LEN <= len(action) <= MAX_ACTION_LEN:
                continue
            if not MIN_REASONING_LEN <= len(reasoning) <= MAX_REASONING_LEN:
                continue
            key = normalize_action(action)
            if key in seen:
                continue
            seen.add(key)

            decisions.append(
                JobDecision(
                    job_id=job_id,
                    action=clean_action(action),
                    reasoning=clean_reasoning(reasoning),
                    alternatives=extract_alternatives(sentence) or None,
                    category=categorize(action, reasoning),
                )
            )
            break

    return decisions


def extract_decisions_from_text(text: str, job_id: str) -> list[JobDecision]:
    structured = extract_structured_decisions(text, job_id)
    if structured:
        return structured
    return extract_natural_language_decisions(text, job_id)


def extract_decisions(log: str, job_id: str) -> list[JobDecision]:
    """Decisions from a raw job log."""
    return extract_decisions_from_text(reconstruct_transcript(log), job_id)


def parse_score(raw: str) -> int | None:
    """``"85"`` -> 85, ``"0.85"`` -> 85; clamped to 0..100."""
    raw = raw.strip()
    try:
        score = int(raw)
    except ValueError:
        try:
            value = float(raw)
        except ValueError:
            return None
        score = round(value * 100) if value <= 1.0 else int(value)
    return max(0, min(100, score))


def extract_confidence_from_text(text: str, job_id: str) -> ConfidenceAssessment | None:
    match = CONFIDENCE_BLOCK_RE.search(normalize_newlines(text))
    if match is None:
        return None
    score = parse_score(match.group(1))
    if score is None:
        return None
    return ConfidenceAssessment(
        job_id=job_id,
        score=score,
        assessment=match.group(2).strip(),
        reasoning=match.group(3).strip(),
        risks=split_list(match.group(4)),
    )


def extract_confidence(log: str, job_id: str) -> ConfidenceAssessment | None:
    """Confidence assessment from a raw job log, if the agent emitted one."""
    return extract_confidence_from_text(reconstruct_transcript(log), job_id)


async def persist_job_analysis(store: JobStore, job: Job) -> None:
    """Extract and store decisions/confidence for a job that has none yet.

    Safe to call repeatedly: each kind is only extracted while nothing is
    stored for the job.
    """
    need_decisions = not await store.get_decisions_for_job(job.id)
    need_confidence = await store.get_confidence_for_job(job.id) is None
    if not (need_decisions or need_confidence):
        return

    try:
        log = Path(job.log_path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("decisions.log_unreadable", job_id=job.id, path=job.log_path, error=str(e))
        return

    text = reconstruct_transcript(log)
    if need_decisions:
        decisions = extract_decisions_from_text(text, job.id)
        if decisions:
            saved = await store.save_decisions(job.id, decisions)
            logger.info("decisions.extracted", job_id=job.id, count=saved)
    if need_confidence:
        confidence = extract_confidence_from_text(text, job.id)
        if confidence is not None:
            await store.save_confidence(confidence)
            logger.info("decisions.confidence_extracted", job_id=job.id, score=confidence.score)
