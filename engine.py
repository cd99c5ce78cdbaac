from __future__ import annotations
import logging
import uuid
from datetime import date
from typing import Dict, Optional, Tuple

from config import settings
from errors import (
    DraftTooShortError,
    GeneratorError,
    PasscodeRejected,
    PhaseError,
    SessionNotFound,
)
from generator import EssayGenerator
from models import (
    CoachState,
    LAST_PARAGRAPH_INDEX,
    MIN_DRAFT_LENGTH,
    ParagraphReview,
    Phase,
)
from transcript import build_transcript, transcript_filename

logger = logging.getLogger(__name__)


class CoachEngine:
    """
    Phase controller for the five-paragraph writing coach.

    - AccessControl -> Welcome once the shared passcode matches.
    - Welcome -> GeneratingPrompt -> ReadingPrompt, via ApiKeyEntry when no key is known.
    - Writing -> ReviewingParagraph per paragraph; after the fifth, Completed.
    - A failed generator call parks the session in Failed until retry or dismiss.

    Every mutating call holds the session's in-flight slot, so a second
    request while a model call is outstanding is rejected, not queued.
    """
    def __init__(
        self,
        generator: EssayGenerator,
        passcode: Optional[str] = None,
        server_key: Optional[str] = None,
    ):
        self.generator = generator
        self.passcode = passcode if passcode is not None else settings.ACCESS_PASSCODE
        self.server_key = server_key if server_key is not None else settings.OPENROUTER_API_KEY
        self._sessions: Dict[str, CoachState] = {}

    # ---------- Session lifecycle ----------
    def create_session(self) -> CoachState:
        sid = str(uuid.uuid4())
        state = CoachState(session_id=sid)
        self._sessions[sid] = state
        logger.info("Session %s created", sid)
        return state

    def get_state(self, session_id: str) -> Optional[CoachState]:
        return self._sessions.get(session_id)

    # ---------- Access & setup ----------
    def check_passcode(self, session_id: str, passcode: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("passcode"):
            _require_phase(state, Phase.ACCESS_CONTROL)
            if passcode.strip().upper() != self.passcode.strip().upper():
                state.access_error = "通行碼錯誤，請確認後再試"
                logger.info("Session %s: passcode rejected", session_id)
                raise PasscodeRejected("Incorrect passcode")
            state.access_error = None
            state.phase = Phase.WELCOME
        return state

    def start_session(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("start"):
            _require_phase(state, Phase.WELCOME)
            key = self._effective_key(state)
            if not key:
                state.phase = Phase.API_KEY_ENTRY
                return state
            self._generate_prompt(state, key)
        return state

    def submit_api_key(self, session_id: str, api_key: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("api_key"):
            _require_phase(state, Phase.API_KEY_ENTRY)
            key = api_key.strip()
            if not key:
                raise ValueError("API key must not be empty")
            state.credential = key
            self._generate_prompt(state, key)
        return state

    def cancel_api_key(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("cancel_api_key"):
            _require_phase(state, Phase.API_KEY_ENTRY)
            state.phase = Phase.WELCOME
        return state

    def begin_writing(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("begin_writing"):
            _require_phase(state, Phase.READING_PROMPT)
            state.phase = Phase.WRITING
        return state

    # ---------- Paragraph cycle ----------
    def submit_paragraph(self, session_id: str, text: str) -> ParagraphReview:
        state = self._require_session(session_id)
        with state.slot.claim("review"):
            _require_phase(state, Phase.WRITING)
            if len(text) < MIN_DRAFT_LENGTH or not text.strip():
                raise DraftTooShortError(
                    f"A paragraph needs at least {MIN_DRAFT_LENGTH} characters"
                )
            if state.prompt is None:
                raise PhaseError("No prompt has been generated for this session")
            return self._review(state, text)

    def advance(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("advance"):
            _require_phase(state, Phase.REVIEWING_PARAGRAPH)
            if state.essay.current_paragraph_index < LAST_PARAGRAPH_INDEX:
                state.essay.advance()
                state.phase = Phase.WRITING
            else:
                state.phase = Phase.COMPLETED
                logger.info("Session %s: essay completed", session_id)
        return state

    # ---------- Completion ----------
    def save_reflection(self, session_id: str, summary: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("reflection"):
            _require_phase(state, Phase.COMPLETED)
            if not summary.strip():
                raise ValueError("Reflection must not be empty")
            state.reflection = summary.strip()
        return state

    def transcript(self, session_id: str, on: Optional[date] = None) -> Tuple[str, str]:
        state = self._require_session(session_id)
        if state.prompt is None:
            raise PhaseError("Nothing to export: no prompt has been generated")
        text = build_transcript(state.prompt, state.essay.reviews, state.reflection, on=on)
        return transcript_filename(state.prompt, on=on), text

    def reset(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("reset"):
            _require_phase(state, Phase.COMPLETED)
            state.clear_exercise()
            state.phase = Phase.WELCOME
        return state

    # ---------- Failure handling ----------
    def retry(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("retry"):
            _require_phase(state, Phase.FAILED)
            if state.failed_phase == Phase.WRITING:
                state.phase = Phase.WRITING
                self._review(state, state.pending_draft or "")
            else:
                self._generate_prompt(state, self._effective_key(state))
        return state

    def dismiss_failure(self, session_id: str) -> CoachState:
        state = self._require_session(session_id)
        with state.slot.claim("dismiss"):
            _require_phase(state, Phase.FAILED)
            if state.failed_phase == Phase.WRITING:
                # Draft stays in pending_draft so the writer can edit it
                state.error = None
                state.failed_phase = None
                state.phase = Phase.WRITING
            elif state.credential:
                # The visitor's key may be the cause; ask for it again
                state.clear_failure()
                state.credential = None
                state.phase = Phase.API_KEY_ENTRY
            else:
                state.clear_failure()
                state.phase = Phase.WELCOME
        return state

    def close_session(self, session_id: str) -> None:
        state = self._require_session(session_id)
        with state.slot.claim("close"):
            del self._sessions[session_id]
        logger.info("Session %s closed", session_id)

    # ---------- helpers ----------
    def _require_session(self, session_id: str) -> CoachState:
        st = self._sessions.get(session_id)
        if not st:
            raise SessionNotFound(f"Unknown session_id: {session_id}")
        return st

    def _effective_key(self, state: CoachState) -> Optional[str]:
        return state.credential or self.server_key or None

    def _generate_prompt(self, state: CoachState, key: Optional[str]) -> None:
        state.phase = Phase.GENERATING_PROMPT
        state.clear_failure()
        try:
            prompt = self.generator.generate_prompt(credential=key)
        except GeneratorError as e:
            self._fail(state, Phase.GENERATING_PROMPT, e)
            raise
        state.prompt = prompt
        state.phase = Phase.READING_PROMPT

    def _review(self, state: CoachState, draft: str) -> ParagraphReview:
        essay = state.essay
        state.pending_draft = draft
        try:
            review = self.generator.review_paragraph(
                essay.current_paragraph_index,
                draft,
                state.prompt,
                credential=self._effective_key(state),
                previous=list(essay.paragraphs),
            )
        except GeneratorError as e:
            self._fail(state, Phase.WRITING, e)
            raise
        essay.record(draft, review)
        state.clear_failure()
        state.phase = Phase.REVIEWING_PARAGRAPH
        logger.info(
            "Session %s: paragraph %d reviewed (%d words)",
            state.session_id, essay.current_paragraph_index + 1, review.word_count,
        )
        return review

    @staticmethod
    def _fail(state: CoachState, phase: Phase, err: Exception) -> None:
        logger.warning("Session %s: generator call failed in %s: %s", state.session_id, phase.value, err)
        state.phase = Phase.FAILED
        state.failed_phase = phase
        state.error = str(err)


def _require_phase(state: CoachState, expected: Phase) -> None:
    if state.phase != expected:
        raise PhaseError(
            f"Not allowed in phase '{state.phase.value}' (expected '{expected.value}')"
        )
