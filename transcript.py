from __future__ import annotations
import re
from datetime import date
from typing import Optional, Sequence

from models import ExamPrompt, ParagraphReview, PARAGRAPH_GUIDES

APP_NAME = "國寫長文實戰教練"
RULE = "-" * 48
DOUBLE_RULE = "=" * 48
UNSAFE_FILENAME_RE = re.compile(r"[\\/:*?\"<>|\s]+")


def transcript_filename(prompt: ExamPrompt, on: Optional[date] = None) -> str:
    on = on or date.today()
    title = UNSAFE_FILENAME_RE.sub("_", prompt.title).strip("_") or "untitled"
    return f"國寫練習_{title}_{on.isoformat()}.txt"


def build_transcript(
    prompt: Optional[ExamPrompt],
    reviews: Sequence[ParagraphReview],
    reflection: str,
    on: Optional[date] = None,
) -> str:
    """
    Render a finished (or partial) exercise as a plain-text record:
    prompt, then original/critique/refined per paragraph, then the reflection.
    """
    if prompt is None:
        raise ValueError("Nothing to export: no prompt has been generated")
    on = on or date.today()

    blocks = []
    for idx, review in enumerate(reviews):
        blocks.append(
            f"【{PARAGRAPH_GUIDES[idx].title}】\n"
            f"{RULE}\n"
            f"● 您的原始草稿：\n{review.original}\n\n"
            f"● 教練評析：\n{review.critique}\n\n"
            f"● AI 優化版本：\n{review.refined}"
        )
    detailed = f"\n\n{DOUBLE_RULE}\n\n".join(blocks)

    lines = [
        f"【{APP_NAME} - 練習紀錄】",
        "",
        f"題目：{prompt.title}",
        f"日期：{on.isoformat()}",
        RULE,
        "【閱讀材料】",
        prompt.material,
        "",
        "【寫作引導】",
        prompt.question,
        RULE,
        "",
        detailed,
        "",
        DOUBLE_RULE,
        "",
        "【寫作反思總結】",
        reflection,
        "",
        RULE,
        f"由 {APP_NAME} 生成",
    ]
    return "\n".join(lines).strip() + "\n"
