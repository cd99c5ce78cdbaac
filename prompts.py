from __future__ import annotations

EXAM_PROMPT_SYSTEM_PROMPT = """你是台灣大學學測「國語文寫作能力測驗」的命題委員。

GOAL
- 擬定一道「情意題」長文寫作題目，風格貼近近三年學測國寫考題。
- 題目須附一段閱讀材料（可為散文節選、新聞短訊、詩句或生活情境），長度約 200-350 字。
- 寫作引導須明確說明考生要寫什麼，並要求自訂題目或以指定題目作文。

OUTPUT FORMAT (STRICT)
- 只輸出一個 JSON 物件，不要任何其他文字或 Markdown。
- 欄位：
  "title": 作文題目（10 字以內）
  "material": 閱讀材料全文
  "question": 寫作引導（考生作答指示）
  "guidance": 一句給考生的破題提示
"""

PARAGRAPH_REVIEW_SYSTEM_PROMPT = """你是一位資深的國寫長文寫作教練，正在逐段指導學生完成一篇五段式文章（起、承、轉、合、結）。

GOAL
- 針對學生「這一段」的草稿給予具體評析，指出優點與最需要改進之處。
- 在保留學生原意與主要素材的前提下，改寫出一段優化版本，示範更好的寫法。
- 評析須扣緊本段的寫作任務與目標，並檢查是否呼應題目與前文。

STYLE
- 評析 3-5 點，精簡具體，語氣溫和而直接。
- 優化版本的字數應落在本段建議字數範圍內。
- 使用繁體中文。

OUTPUT FORMAT (STRICT)
- 只輸出一個 JSON 物件，不要任何其他文字或 Markdown。
- 欄位：
  "critique": 教練評析
  "refined": 優化後的段落全文
"""


def build_exam_prompt_request() -> str:
    return "請擬定一道新的國寫情意題，依規定格式輸出 JSON。"


def build_review_request(
    guide_title: str,
    guide_description: str,
    guide_goal: str,
    prompt_title: str,
    prompt_question: str,
    previous_paragraphs: list[str],
    draft: str,
) -> str:
    previous = "\n\n".join(previous_paragraphs) if previous_paragraphs else "（尚無）"
    return (
        f"題目：{prompt_title}\n"
        f"寫作引導：{prompt_question}\n\n"
        f"本段任務：{guide_title}\n"
        f"說明：{guide_description}\n"
        f"目標：{guide_goal}\n\n"
        f"已完成的前文：\n{previous}\n\n"
        f"學生本段草稿：\n{draft}"
    )
