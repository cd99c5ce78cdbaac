from __future__ import annotations
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Tuple

from errors import PhaseError, SessionBusyError


class Phase(str, Enum):
    ACCESS_CONTROL = "access_control"
    WELCOME = "welcome"
    API_KEY_ENTRY = "api_key_entry"
    GENERATING_PROMPT = "generating_prompt"
    READING_PROMPT = "reading_prompt"
    WRITING = "writing"
    REVIEWING_PARAGRAPH = "reviewing_paragraph"
    COMPLETED = "completed"
    # Generator call failed; waiting for retry or dismiss
    FAILED = "failed"


@dataclass(frozen=True)
class ExamPrompt:
    title: str
    material: str
    question: str
    guidance: str


@dataclass(frozen=True)
class ParagraphGuide:
    title: str
    description: str
    goal: str
    min_words: int
    max_words: int

    @property
    def short_title(self) -> str:
        # "第一段：起 (破題)" -> "第一段"
        return self.title.split("：")[0]


@dataclass(frozen=True)
class ParagraphReview:
    original: str
    critique: str
    refined: str
    word_count: int
    # Paragraph position, 0-4
    index: int


PARAGRAPH_GUIDES: Tuple[ParagraphGuide, ...] = (
    ParagraphGuide(
        title="第一段：起 (破題)",
        description="針對題目核心意象進行破題，提出主旨。字數建議：100-150字。",
        goal="引入題目核心，明確點出文章主軸，製造吸引力。",
        min_words=100, max_words=150,
    ),
    ParagraphGuide(
        title="第二段：承 (敘事/經驗)",
        description="承接主旨，描寫具體的生活經驗或觀察。字數建議：150-200字。",
        goal="運用感官描寫，具體化個人經驗，與第一段主旨呼應。",
        min_words=150, max_words=200,
    ),
    ParagraphGuide(
        title="第三段：轉 (轉折/深化)",
        description="從經驗中提煉出更深層的感悟或轉折。字數建議：150-200字。",
        goal="挖掘表象背後的意義，展現思考深度與情感層次。",
        min_words=150, max_words=200,
    ),
    ParagraphGuide(
        title="第四段：合 (哲理/擴大)",
        description="將個人感悟連結到普遍哲理或社會現象。字數建議：100-150字。",
        goal="由小見大，將情感昇華至普世價值或人生哲理。",
        min_words=100, max_words=150,
    ),
    ParagraphGuide(
        title="第五段：結 (收束/餘韻)",
        description="總結全文，呼應首段，留下餘韻。字數建議：80-120字。",
        goal="有力收尾，統整全文情感，給予讀者完整感。",
        min_words=80, max_words=120,
    ),
)

PARAGRAPH_COUNT = len(PARAGRAPH_GUIDES)
LAST_PARAGRAPH_INDEX = PARAGRAPH_COUNT - 1
MIN_DRAFT_LENGTH = 10


@dataclass
class EssaySession:
    """
    Drafts and reviews for one five-paragraph exercise.
    Both lists grow together, one entry per accepted paragraph.
    """
    paragraphs: List[str] = field(default_factory=list)
    reviews: List[ParagraphReview] = field(default_factory=list)
    current_paragraph_index: int = 0

    @property
    def current_guide(self) -> ParagraphGuide:
        return PARAGRAPH_GUIDES[self.current_paragraph_index]

    @property
    def awaiting_draft(self) -> bool:
        return len(self.paragraphs) == self.current_paragraph_index

    def record(self, draft: str, review: ParagraphReview) -> None:
        if not self.awaiting_draft:
            raise PhaseError(
                f"Paragraph {self.current_paragraph_index + 1} was already submitted"
            )
        self.paragraphs.append(draft)
        self.reviews.append(review)

    def advance(self) -> None:
        if self.current_paragraph_index >= LAST_PARAGRAPH_INDEX:
            raise PhaseError("Already on the last paragraph")
        if self.awaiting_draft:
            raise PhaseError("Current paragraph has not been reviewed yet")
        self.current_paragraph_index += 1


class InFlightSlot:
    """Single-slot guard: at most one operation per session at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.label: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def claim(self, label: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise SessionBusyError(f"'{self.label}' is still in progress for this session")
        self.label = label
        try:
            yield
        finally:
            self.label = None
            self._lock.release()


@dataclass
class CoachState:
    session_id: str
    phase: Phase = Phase.ACCESS_CONTROL
    # Visitor-supplied key, kept across resets
    credential: Optional[str] = None
    prompt: Optional[ExamPrompt] = None
    essay: EssaySession = field(default_factory=EssaySession)
    reflection: str = ""
    access_error: Optional[str] = None
    # Failure bookkeeping for Phase.FAILED
    error: Optional[str] = None
    failed_phase: Optional[Phase] = None
    pending_draft: Optional[str] = None
    slot: InFlightSlot = field(default_factory=InFlightSlot, repr=False, compare=False)

    def clear_exercise(self) -> None:
        self.prompt = None
        self.essay = EssaySession()
        self.reflection = ""
        self.clear_failure()

    def clear_failure(self) -> None:
        self.error = None
        self.failed_phase = None
        self.pending_draft = None
