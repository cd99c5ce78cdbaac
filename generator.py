from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

from errors import GeneratorError
from models import ExamPrompt, ParagraphReview, PARAGRAPH_GUIDES
from openrouter_client import OpenRouterClient
from prompts import (
    EXAM_PROMPT_SYSTEM_PROMPT,
    PARAGRAPH_REVIEW_SYSTEM_PROMPT,
    build_exam_prompt_request,
    build_review_request,
)

logger = logging.getLogger(__name__)

# One CJK character or one run of Latin letters/digits counts as a word
WORD_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]|[A-Za-z0-9']+")
FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_PROMPT_FIELDS = ("title", "material", "question", "guidance")


def count_words(text: str) -> int:
    return len(WORD_RE.findall(text))


class EssayGenerator:
    """
    Talks to the language model for the two things the coach needs:
    a fresh exam prompt, and a critique + rewrite of one paragraph.
    """
    def __init__(self, client: OpenRouterClient):
        self.client = client

    def generate_prompt(self, credential: Optional[str] = None) -> ExamPrompt:
        messages = [
            {"role": "system", "content": EXAM_PROMPT_SYSTEM_PROMPT},
            {"role": "user", "content": build_exam_prompt_request()},
        ]
        content = self.client.chat(
            messages=messages, temperature=0.9, api_key=credential, json_mode=True
        )
        data = _parse_json_object(content)
        if data is None:
            raise GeneratorError("Prompt generation returned text that is not JSON")

        missing = [f for f in _PROMPT_FIELDS if not str(data.get(f) or "").strip()]
        if missing:
            raise GeneratorError(f"Generated prompt is missing: {', '.join(missing)}")

        prompt = ExamPrompt(**{f: str(data[f]).strip() for f in _PROMPT_FIELDS})
        logger.info("Generated exam prompt %r", prompt.title)
        return prompt

    def review_paragraph(
        self,
        index: int,
        draft: str,
        prompt: ExamPrompt,
        credential: Optional[str] = None,
        previous: Sequence[str] = (),
    ) -> ParagraphReview:
        if not 0 <= index < len(PARAGRAPH_GUIDES):
            raise ValueError(f"Paragraph index out of range: {index}")
        guide = PARAGRAPH_GUIDES[index]

        messages = [
            {"role": "system", "content": PARAGRAPH_REVIEW_SYSTEM_PROMPT},
            {"role": "user", "content": build_review_request(
                guide_title=guide.title,
                guide_description=guide.description,
                guide_goal=guide.goal,
                prompt_title=prompt.title,
                prompt_question=prompt.question,
                previous_paragraphs=list(previous),
                draft=draft,
            )},
        ]
        content = self.client.chat(
            messages=messages, temperature=0.4, api_key=credential, json_mode=True
        )
        critique, refined = _split_critique_and_refined(content)
        if not refined:
            refined = draft

        return ParagraphReview(
            original=draft,
            critique=critique,
            refined=refined,
            word_count=count_words(draft),
            index=index,
        )


def _parse_json_object(content: str) -> Optional[Dict[str, Any]]:
    text = FENCE_RE.sub("", content.strip())
    try:
        data = json.loads(text)
    except ValueError:
        # Models sometimes wrap the object in prose
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(text[start:end + 1])
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def _split_critique_and_refined(content: str) -> tuple[str, str]:
    data = _parse_json_object(content)
    if data is not None and (data.get("critique") or data.get("refined")):
        return str(data.get("critique") or "").strip(), str(data.get("refined") or "").strip()

    # Plain-text reply with section headers
    critique_lines, refined_lines = [], []
    into_refined = False
    seen_header = False
    for line in content.splitlines():
        head = line.strip().lstrip("#*【 ").lower()
        if head.startswith(("評析", "critique")):
            seen_header = True
            into_refined = False
            line = _strip_header(line)
        elif head.startswith(("優化", "refined")):
            seen_header = True
            into_refined = True
            line = _strip_header(line)
        (refined_lines if into_refined else critique_lines).append(line)

    if not seen_header:
        logger.warning("Review reply had no recognizable sections; using it as critique")
        return content.strip(), ""
    return "\n".join(critique_lines).strip(), "\n".join(refined_lines).strip()


def _strip_header(line: str) -> str:
    for sep in ("：", ":", "】"):
        if sep in line:
            return line.split(sep, 1)[1]
    return ""
