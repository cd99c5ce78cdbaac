from __future__ import annotations
import logging
from typing import Any, Callable, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from config import configure_logging
from engine import CoachEngine
from errors import (
    GeneratorError,
    PasscodeRejected,
    PhaseError,
    SessionBusyError,
    SessionNotFound,
)
from generator import EssayGenerator
from models import (
    CoachState,
    ExamPrompt,
    PARAGRAPH_GUIDES,
    ParagraphGuide,
    ParagraphReview,
    Phase,
)
from openrouter_client import OpenRouterClient

configure_logging()
logger = logging.getLogger(__name__)

# ---------- Pydantic IO models ----------
class PasscodeIn(BaseModel):
    passcode: str = Field(..., examples=["EMMA2025"])

class ApiKeyIn(BaseModel):
    api_key: str

class ParagraphIn(BaseModel):
    text: str

class ReflectionIn(BaseModel):
    summary: str = Field(..., examples=["學會了運用轉折深化主題"])

class PromptOut(BaseModel):
    title: str
    material: str
    question: str
    guidance: str

class GuideOut(BaseModel):
    index: int
    title: str
    description: str
    goal: str
    min_words: int
    max_words: int

class ReviewOut(BaseModel):
    index: int
    original: str
    critique: str
    refined: str
    word_count: int
    # Within the guide's suggested length range
    within_range: bool

class SessionStateOut(BaseModel):
    session_id: str
    phase: Phase
    in_flight: bool
    has_credential: bool
    access_error: Optional[str] = None
    prompt: Optional[PromptOut] = None
    current_paragraph_index: int
    current_guide: Optional[GuideOut] = None
    paragraphs: list[str]
    reviews: list[ReviewOut]
    reflection: str
    error: Optional[str] = None
    failed_phase: Optional[Phase] = None
    pending_draft: Optional[str] = None

# ---------- App ----------
app = FastAPI(title="Essay Coach API", version="1.0.0")

_engine: Optional[CoachEngine] = None

def get_engine() -> CoachEngine:
    global _engine
    if _engine is None:
        _engine = CoachEngine(generator=EssayGenerator(OpenRouterClient()))
    return _engine

def _call(fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except SessionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PasscodeRejected as e:
        raise HTTPException(status_code=403, detail=str(e))
    except (PhaseError, SessionBusyError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except GeneratorError as e:
        # Forward the upstream message to the client (bad gateway)
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

def _to_prompt_out(p: Optional[ExamPrompt]) -> Optional[PromptOut]:
    if p is None:
        return None
    return PromptOut(title=p.title, material=p.material, question=p.question, guidance=p.guidance)

def _to_guide_out(index: int, g: ParagraphGuide) -> GuideOut:
    return GuideOut(
        index=index, title=g.title, description=g.description, goal=g.goal,
        min_words=g.min_words, max_words=g.max_words,
    )

def _to_review_out(r: ParagraphReview) -> ReviewOut:
    guide = PARAGRAPH_GUIDES[r.index]
    return ReviewOut(
        index=r.index,
        original=r.original,
        critique=r.critique,
        refined=r.refined,
        word_count=r.word_count,
        within_range=guide.min_words <= r.word_count <= guide.max_words,
    )

def _to_state_out(st: CoachState) -> SessionStateOut:
    essay = st.essay
    # Guide only matters once there is a prompt to write against
    guide = _to_guide_out(essay.current_paragraph_index, essay.current_guide) if st.prompt else None
    return SessionStateOut(
        session_id=st.session_id,
        phase=st.phase,
        in_flight=st.slot.busy,
        has_credential=bool(st.credential),
        access_error=st.access_error,
        prompt=_to_prompt_out(st.prompt),
        current_paragraph_index=essay.current_paragraph_index,
        current_guide=guide,
        paragraphs=list(essay.paragraphs),
        reviews=[_to_review_out(r) for r in essay.reviews],
        reflection=st.reflection,
        error=st.error,
        failed_phase=st.failed_phase,
        pending_draft=st.pending_draft,
    )

@app.get("/v1/coach/guides", response_model=list[GuideOut])
def list_guides():
    return [_to_guide_out(i, g) for i, g in enumerate(PARAGRAPH_GUIDES)]

@app.post("/v1/coach/sessions", response_model=SessionStateOut)
def create_session(engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(engine.create_session())

@app.get("/v1/coach/sessions/{session_id}", response_model=SessionStateOut)
def get_state(session_id: str, engine: CoachEngine = Depends(get_engine)):
    st = engine.get_state(session_id)
    if not st:
        raise HTTPException(404, "Session not found")
    return _to_state_out(st)

@app.post("/v1/coach/sessions/{session_id}/passcode", response_model=SessionStateOut)
def check_passcode(session_id: str, body: PasscodeIn, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.check_passcode, session_id, body.passcode))

@app.post("/v1/coach/sessions/{session_id}/start", response_model=SessionStateOut)
def start_session(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.start_session, session_id))

@app.post("/v1/coach/sessions/{session_id}/api-key", response_model=SessionStateOut)
def submit_api_key(session_id: str, body: ApiKeyIn, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.submit_api_key, session_id, body.api_key))

@app.post("/v1/coach/sessions/{session_id}/api-key/cancel", response_model=SessionStateOut)
def cancel_api_key(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.cancel_api_key, session_id))

@app.post("/v1/coach/sessions/{session_id}/writing", response_model=SessionStateOut)
def begin_writing(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.begin_writing, session_id))

@app.post("/v1/coach/sessions/{session_id}/paragraphs", response_model=ReviewOut)
def submit_paragraph(session_id: str, body: ParagraphIn, engine: CoachEngine = Depends(get_engine)):
    review = _call(engine.submit_paragraph, session_id, body.text)
    return _to_review_out(review)

@app.post("/v1/coach/sessions/{session_id}/advance", response_model=SessionStateOut)
def advance(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.advance, session_id))

@app.post("/v1/coach/sessions/{session_id}/retry", response_model=SessionStateOut)
def retry(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.retry, session_id))

@app.post("/v1/coach/sessions/{session_id}/dismiss", response_model=SessionStateOut)
def dismiss_failure(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.dismiss_failure, session_id))

@app.post("/v1/coach/sessions/{session_id}/reflection", response_model=SessionStateOut)
def save_reflection(session_id: str, body: ReflectionIn, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.save_reflection, session_id, body.summary))

@app.get("/v1/coach/sessions/{session_id}/transcript", response_class=PlainTextResponse)
def download_transcript(session_id: str, engine: CoachEngine = Depends(get_engine)):
    filename, text = _call(engine.transcript, session_id)
    # RFC 5987: the title is usually non-ASCII
    disposition = f"attachment; filename=\"transcript.txt\"; filename*=UTF-8''{quote(filename)}"
    return PlainTextResponse(
        text,
        media_type="text/plain; charset=utf-8",
        headers={"Content-Disposition": disposition},
    )

@app.post("/v1/coach/sessions/{session_id}/reset", response_model=SessionStateOut)
def reset(session_id: str, engine: CoachEngine = Depends(get_engine)):
    return _to_state_out(_call(engine.reset, session_id))

@app.delete("/v1/coach/sessions/{session_id}", status_code=204)
def close_session(session_id: str, engine: CoachEngine = Depends(get_engine)):
    _call(engine.close_session, session_id)
