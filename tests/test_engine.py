import json

import pytest

from engine import CoachEngine
from errors import (
    DraftTooShortError,
    GeneratorError,
    PasscodeRejected,
    PhaseError,
    SessionBusyError,
    SessionNotFound,
)
from generator import EssayGenerator
from models import Phase
from openrouter_client import OpenRouterClient
from prompts import EXAM_PROMPT_SYSTEM_PROMPT

PARAGRAPH = "這是一段超過十個字的測試段落內容。"


class DummyClient(OpenRouterClient):
    def __init__(self, fail_reviews=False, fail_prompts=False):
        self.calls = []
        self.fail_reviews = fail_reviews
        self.fail_prompts = fail_prompts

    def chat(self, messages, **kwargs):
        is_prompt = messages[0]["content"] == EXAM_PROMPT_SYSTEM_PROMPT
        self.calls.append(("prompt" if is_prompt else "review", kwargs.get("api_key")))
        if is_prompt:
            if self.fail_prompts:
                raise GeneratorError("OpenRouter error 500: boom")
            return json.dumps({
                "title": "燈", "material": "一段材料", "question": "請寫一篇文章", "guidance": "從生活出發",
            })
        if self.fail_reviews:
            raise GeneratorError("OpenRouter timed out after 90s")
        return json.dumps({"critique": "結構清楚", "refined": "優化後的段落"})


def make_engine(client=None, server_key="server-key"):
    client = client or DummyClient()
    return CoachEngine(generator=EssayGenerator(client), passcode="EMMA2025", server_key=server_key), client


def writing_session(eng):
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    eng.begin_writing(st.session_id)
    return st


def test_passcode_is_trimmed_and_case_insensitive():
    eng, _ = make_engine()
    st = eng.create_session()
    assert st.phase == Phase.ACCESS_CONTROL
    eng.check_passcode(st.session_id, "  emma2025 ")
    assert st.phase == Phase.WELCOME
    assert st.access_error is None


def test_wrong_passcode_stays_locked():
    eng, _ = make_engine()
    st = eng.create_session()
    with pytest.raises(PasscodeRejected):
        eng.check_passcode(st.session_id, "WRONG")
    assert st.phase == Phase.ACCESS_CONTROL
    assert st.access_error


def test_start_without_any_key_asks_for_one():
    eng, client = make_engine(server_key="")
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    assert st.phase == Phase.API_KEY_ENTRY
    assert client.calls == []

    with pytest.raises(ValueError):
        eng.submit_api_key(st.session_id, "   ")
    assert st.phase == Phase.API_KEY_ENTRY

    eng.submit_api_key(st.session_id, " user-key ")
    assert st.phase == Phase.READING_PROMPT
    assert st.credential == "user-key"
    assert st.prompt.title == "燈"
    assert client.calls == [("prompt", "user-key")]


def test_cancel_api_key_returns_to_welcome():
    eng, _ = make_engine(server_key="")
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    eng.cancel_api_key(st.session_id)
    assert st.phase == Phase.WELCOME


def test_start_with_server_key_generates_prompt():
    eng, client = make_engine()
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    assert st.phase == Phase.READING_PROMPT
    assert client.calls == [("prompt", "server-key")]


def test_short_paragraph_is_rejected_without_a_call():
    eng, client = make_engine()
    st = writing_session(eng)
    calls_before = len(client.calls)
    with pytest.raises(DraftTooShortError):
        eng.submit_paragraph(st.session_id, "太短了")
    with pytest.raises(DraftTooShortError):
        eng.submit_paragraph(st.session_id, " " * 12)
    assert st.phase == Phase.WRITING
    assert st.essay.paragraphs == [] and st.essay.reviews == []
    assert len(client.calls) == calls_before


def test_five_cycles_reach_completed():
    eng, _ = make_engine()
    st = writing_session(eng)
    for i in range(5):
        assert st.phase == Phase.WRITING
        assert st.essay.current_paragraph_index == i
        assert len(st.essay.paragraphs) == len(st.essay.reviews) == i
        review = eng.submit_paragraph(st.session_id, f"{PARAGRAPH}{i}")
        assert review.original == f"{PARAGRAPH}{i}"
        assert st.phase == Phase.REVIEWING_PARAGRAPH
        assert len(st.essay.paragraphs) == len(st.essay.reviews) == i + 1
        eng.advance(st.session_id)

    assert st.phase == Phase.COMPLETED
    assert st.essay.current_paragraph_index == 4
    assert len(st.essay.paragraphs) == 5
    assert len(st.essay.reviews) == 5


def test_cannot_advance_before_review_or_resubmit():
    eng, _ = make_engine()
    st = writing_session(eng)
    with pytest.raises(PhaseError):
        eng.advance(st.session_id)
    eng.submit_paragraph(st.session_id, PARAGRAPH)
    with pytest.raises(PhaseError):
        eng.submit_paragraph(st.session_id, PARAGRAPH)
    assert len(st.essay.paragraphs) == 1


def test_reset_clears_exercise_but_keeps_credential():
    eng, _ = make_engine(server_key="")
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    eng.submit_api_key(st.session_id, "user-key")
    eng.begin_writing(st.session_id)
    for _ in range(5):
        eng.submit_paragraph(st.session_id, PARAGRAPH)
        eng.advance(st.session_id)
    eng.save_reflection(st.session_id, "學到很多")

    eng.reset(st.session_id)
    assert st.phase == Phase.WELCOME
    assert st.prompt is None
    assert st.essay.paragraphs == [] and st.essay.reviews == []
    assert st.essay.current_paragraph_index == 0
    assert st.reflection == ""
    assert st.credential == "user-key"

    # Key is reused, so no detour through key entry
    eng.start_session(st.session_id)
    assert st.phase == Phase.READING_PROMPT


def test_reset_only_from_completed():
    eng, _ = make_engine()
    st = writing_session(eng)
    with pytest.raises(PhaseError):
        eng.reset(st.session_id)


def test_review_failure_can_be_retried():
    client = DummyClient(fail_reviews=True)
    eng, _ = make_engine(client)
    st = writing_session(eng)

    with pytest.raises(GeneratorError):
        eng.submit_paragraph(st.session_id, PARAGRAPH)
    assert st.phase == Phase.FAILED
    assert st.failed_phase == Phase.WRITING
    assert st.pending_draft == PARAGRAPH
    assert "timed out" in st.error
    assert st.essay.paragraphs == [] and st.essay.reviews == []

    client.fail_reviews = False
    eng.retry(st.session_id)
    assert st.phase == Phase.REVIEWING_PARAGRAPH
    assert st.essay.paragraphs == [PARAGRAPH]
    assert st.error is None and st.pending_draft is None


def test_review_failure_dismiss_hands_draft_back():
    eng, _ = make_engine(DummyClient(fail_reviews=True))
    st = writing_session(eng)
    with pytest.raises(GeneratorError):
        eng.submit_paragraph(st.session_id, PARAGRAPH)
    eng.dismiss_failure(st.session_id)
    assert st.phase == Phase.WRITING
    assert st.pending_draft == PARAGRAPH
    assert st.error is None


def test_prompt_failure_then_dismiss_returns_to_welcome():
    client = DummyClient(fail_prompts=True)
    eng, _ = make_engine(client)
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    with pytest.raises(GeneratorError):
        eng.start_session(st.session_id)
    assert st.phase == Phase.FAILED
    assert st.failed_phase == Phase.GENERATING_PROMPT

    eng.dismiss_failure(st.session_id)
    assert st.phase == Phase.WELCOME
    assert st.error is None

    client.fail_prompts = False
    eng.start_session(st.session_id)
    assert st.phase == Phase.READING_PROMPT


def test_prompt_failure_retry():
    client = DummyClient(fail_prompts=True)
    eng, _ = make_engine(client)
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    with pytest.raises(GeneratorError):
        eng.start_session(st.session_id)
    client.fail_prompts = False
    eng.retry(st.session_id)
    assert st.phase == Phase.READING_PROMPT
    assert st.prompt is not None


def test_second_request_while_busy_is_rejected():
    eng, client = make_engine()
    st = writing_session(eng)
    calls_before = len(client.calls)
    with st.slot.claim("review"):
        assert st.slot.busy
        with pytest.raises(SessionBusyError):
            eng.submit_paragraph(st.session_id, PARAGRAPH)
    assert not st.slot.busy
    assert len(client.calls) == calls_before
    assert st.essay.paragraphs == []


def test_unknown_session():
    eng, _ = make_engine()
    assert eng.get_state("nope") is None
    with pytest.raises(SessionNotFound):
        eng.advance("nope")


def test_transcript_requires_prompt():
    eng, _ = make_engine()
    st = eng.create_session()
    with pytest.raises(PhaseError):
        eng.transcript(st.session_id)


class KeyCheckingClient(DummyClient):
    def chat(self, messages, **kwargs):
        if kwargs.get("api_key") != "good-key":
            self.calls.append(("rejected", kwargs.get("api_key")))
            raise GeneratorError("OpenRouter error 401: invalid key")
        return super().chat(messages, **kwargs)


def test_rejected_visitor_key_can_be_replaced():
    client = KeyCheckingClient()
    eng, _ = make_engine(client, server_key="")
    st = eng.create_session()
    eng.check_passcode(st.session_id, "EMMA2025")
    eng.start_session(st.session_id)
    with pytest.raises(GeneratorError):
        eng.submit_api_key(st.session_id, "typo-key")
    assert st.phase == Phase.FAILED

    eng.dismiss_failure(st.session_id)
    assert st.phase == Phase.API_KEY_ENTRY
    assert st.credential is None

    eng.submit_api_key(st.session_id, "good-key")
    assert st.phase == Phase.READING_PROMPT
    assert st.credential == "good-key"
    assert [key for _, key in client.calls] == ["typo-key", "good-key"]


def test_reviews_carry_their_paragraph_index():
    eng, _ = make_engine()
    st = writing_session(eng)
    for i in range(3):
        review = eng.submit_paragraph(st.session_id, PARAGRAPH)
        assert review.index == i
        eng.advance(st.session_id)
    assert [r.index for r in st.essay.reviews] == [0, 1, 2]


def test_close_session_forgets_it():
    eng, _ = make_engine()
    st = eng.create_session()
    eng.close_session(st.session_id)
    assert eng.get_state(st.session_id) is None
    with pytest.raises(SessionNotFound):
        eng.close_session(st.session_id)
