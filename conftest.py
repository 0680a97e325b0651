"""
Shared fixtures and fakes for the theme extraction tests.

LLM access goes through duck-typed fakes (provider_name + async complete());
embeddings use the deterministic offline "hashing" backend; executors never
really sleep.
"""

import json
import re
from typing import Callable, List, Optional

import pytest

from theme_extraction.config import Settings
from theme_extraction.schemas.base import SourceType
from theme_extraction.schemas.themes import SourceContent, Theme, ThemeSource
from theme_extraction.tools.mock_responses import get_mock_response
from theme_extraction.tools.rate_limiter import RateLimitedExecutor, RateLimitTracker

RATE_LIMIT_MESSAGE = (
    "Error code: 429 - Rate limit reached for model in organization on tokens per day (TPD): "
    "Limit 100000, Used 99996, Requested 400. Please try again in 2m0s."
)

# Five short research sources on different facets of remote learning
SOURCE_TEXTS = {
    "paper_teachers": (
        "Teachers reported chronic exhaustion after months of synchronous video lessons. "
        "Lesson planning time doubled because every activity had to be redesigned for screens. "
        "Several teachers described feeling isolated from colleagues without a shared staff room. "
        "Professional development sessions rarely addressed practical classroom software problems. "
        "Veteran educators struggled more with unfamiliar grading platforms than novices did. "
        "School leaders seldom acknowledged the hidden emotional labour of online instruction."
    ),
    "paper_students": (
        "Students from rural districts frequently lost lectures because of unstable broadband. "
        "Many pupils shared a single laptop with siblings during overlapping class schedules. "
        "Learners said cameras made them anxious about their bedrooms being visible to peers. "
        "Attendance dropped sharply whenever assignments were posted without live discussion. "
        "Older adolescents took part-time jobs that competed with asynchronous coursework. "
        "Peer study groups on messaging apps partly replaced hallway conversations."
    ),
    "video_parents": (
        "Parents became unpaid teaching assistants while also working from home themselves. "
        "Families with limited English found school portals confusing and hard to navigate. "
        "Mothers carried most of the supervision burden according to household diaries. "
        "Caregivers praised recorded lessons because children could replay difficult explanations. "
        "Grandparents looking after younger children rarely had the digital skills required. "
        "Household noise and crowded apartments made quiet study spaces almost impossible."
    ),
    "podcast_policy": (
        "District administrators purchased devices quickly but neglected long-term maintenance budgets. "
        "Procurement rules delayed hotspot distribution to low-income neighbourhoods by weeks. "
        "State assessment waivers removed pressure yet also hid widening achievement gaps. "
        "Vendors locked schools into proprietary platforms with expensive annual licences. "
        "Privacy regulations were loosened temporarily so proctoring software could monitor exams. "
        "Emergency funding favoured hardware purchases over counselling and mental health staff."
    ),
    "paper_outcomes": (
        "Standardized mathematics scores declined most for early primary grade cohorts. "
        "Reading fluency recovered faster when tutoring programmes started within one semester. "
        "Socioemotional surveys showed increased loneliness among first year secondary pupils. "
        "Graduation rates stayed stable although course failure rates rose in core subjects. "
        "Students with disabilities lost access to specialised therapies delivered at school. "
        "Blended schedules after reopening produced better engagement than fully remote weeks."
    ),
}


def make_sources(texts=None, types=None) -> List[SourceContent]:
    texts = texts or SOURCE_TEXTS
    sources = []
    for source_id, text in texts.items():
        if types and source_id in types:
            source_type = types[source_id]
        elif source_id.startswith("video"):
            source_type = SourceType.VIDEO_TRANSCRIPT
        elif source_id.startswith("podcast"):
            source_type = SourceType.PODCAST_TRANSCRIPT
        else:
            source_type = SourceType.PAPER
        sources.append(SourceContent(
            id=source_id, type=source_type, text=text, title=source_id.replace("_", " ").title(),
        ))
    return sources


def make_theme(label: str = "Teacher Workload", source_ids=("s1",), confidence: float = 0.8) -> Theme:
    return Theme(
        id=f"theme_{label.lower().replace(' ', '_')}",
        label=label,
        description=f"Codes about {label.lower()}",
        keywords=label.lower().split(),
        weight=0.5,
        confidence=confidence,
        sources=[
            ThemeSource(source_id=sid, source_title=sid, influence=1.0 / len(source_ids), code_count=1)
            for sid in source_ids
        ],
        code_ids=[f"code_{i}" for i in range(len(source_ids))],
    )


# ══════════════════════════════════════════════════════════════════════════════
# FAKE COLLABORATORS
# ══════════════════════════════════════════════════════════════════════════════

class FakeLLM:
    """Answers from the deterministic mock responder and counts calls."""

    provider_name = "fake"
    model_name = "fake-llm"

    def __init__(self, responder: Optional[Callable[[str], str]] = None):
        self._responder = responder or get_mock_response
        self.calls = 0
        self.prompts: List[str] = []

    async def complete(self, prompt: str, system_prompt: str = "", temperature: Optional[float] = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        return self._responder(prompt)


class ProviderHTTPError(Exception):
    """Shape of an SDK error carrying an HTTP status code."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedLLM(FakeLLM):
    """Every call fails with a 429 that carries a retry hint and quota usage."""

    def __init__(self, message: str = RATE_LIMIT_MESSAGE):
        super().__init__()
        self.message = message

    async def complete(self, prompt: str, system_prompt: str = "", temperature: Optional[float] = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        raise ProviderHTTPError(429, self.message)


class FlakyLLM(FakeLLM):
    """Rate-limits the first `failures` calls, then answers normally."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def complete(self, prompt: str, system_prompt: str = "", temperature: Optional[float] = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if self.calls <= self.failures:
            raise ProviderHTTPError(429, "Rate limit reached. Please try again in 1.5s.")
        return get_mock_response(prompt)


def hallucinating_splits(prompt: str) -> str:
    """Split responder whose statements share nothing with the codes."""
    ids = re.findall(r"=== CODE (\S+) ===", prompt)
    return json.dumps({"splits": [
        {
            "originalCodeId": code_id,
            "atomicStatements": [
                {"label": "Quantum chromodynamics predicts gluon confinement", "groundingExcerpt": ""},
                {"label": "Volcanic eruptions alter stratospheric ozone", "groundingExcerpt": ""},
            ],
        }
        for code_id in ids
    ]})


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def settings() -> Settings:
    return Settings(
        EMBEDDING_BACKEND="hashing",
        EMBEDDING_DIMENSIONS=384,
        CODE_EXTRACTION_MODE="llm",
        LABELING_MODE="local",
        LABELING_WORKERS=2,
        LLM_PROVIDER="openai",
        OPENAI_API_KEY="",
        MOCK_MODE=False,
        RATE_LIMIT_MAX_RETRIES=3,
        RATE_LIMIT_BASE_DELAY_SECONDS=5.0,
        SATURATION_PERMUTATIONS=20,
        CACHE_MAX_ENTRIES=10,
        CACHE_TTL_SECONDS=3600,
    )


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def executor(settings, sleeper) -> RateLimitedExecutor:
    return RateLimitedExecutor(
        tracker=RateLimitTracker(warning_ratio=settings.rate_limit_warning_ratio),
        settings=settings,
        sleep=sleeper,
    )


@pytest.fixture
def sources() -> List[SourceContent]:
    return make_sources()
