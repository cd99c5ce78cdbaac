from datetime import date

import pytest

from models import ExamPrompt, ParagraphReview
from transcript import build_transcript, transcript_filename

PROMPT = ExamPrompt(title="X-title", material="reading-material", question="the-directive", guidance="hint")


def test_fragments_appear_in_order():
    review = ParagraphReview(original="orig-A", critique="crit-B", refined="ref-C", word_count=1, index=0)
    text = build_transcript(PROMPT, [review], "reflect-D", on=date(2025, 1, 2))

    positions = [text.index(s) for s in ("X-title", "orig-A", "crit-B", "ref-C", "reflect-D")]
    assert positions == sorted(positions)
    assert "2025-01-02" in text
    assert "第一段：起 (破題)" in text
    assert text.index("reading-material") < text.index("the-directive") < text.index("orig-A")


def test_transcript_is_deterministic():
    reviews = [ParagraphReview(original=f"o{i}", critique=f"c{i}", refined=f"r{i}", word_count=2, index=i) for i in range(5)]
    on = date(2025, 6, 1)
    assert build_transcript(PROMPT, reviews, "d", on=on) == build_transcript(PROMPT, reviews, "d", on=on)
    assert "第五段：結 (收束/餘韻)" in build_transcript(PROMPT, reviews, "d", on=on)


def test_missing_prompt_aborts():
    with pytest.raises(ValueError):
        build_transcript(None, [], "d")


def test_filename_uses_title_and_date():
    assert transcript_filename(PROMPT, on=date(2025, 3, 4)) == "國寫練習_X-title_2025-03-04.txt"
    odd = ExamPrompt(title="a/b: c", material="", question="", guidance="")
    assert transcript_filename(odd, on=date(2025, 3, 4)) == "國寫練習_a_b_c_2025-03-04.txt"
