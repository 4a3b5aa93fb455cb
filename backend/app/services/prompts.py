"""
NoteDigest Backend — Summary Prompt Templates
===============================================

What:  Static mapping from summary style to the instruction sent to Gemini.
Why:   The style → prompt mapping is configuration, not runtime logic. Keeping
       it in one place means a prompt change is one reviewed diff, and the
       fingerprint (which includes the style) stays meaningful.
"""

from typing import Dict

from app.schemas.summary import SummaryStyle

# Rules shared by every style; kept short so they do not eat the output budget
_COMMON_RULES = """Rules:
- Use only information present in the note. Do not add facts or opinions.
- Write in the same language as the note.
- Return ONLY the summary, with no preamble such as "Here is a summary"."""

STYLE_INSTRUCTIONS: Dict[SummaryStyle, str] = {
    SummaryStyle.CONCISE: (
        "Summarize the following personal note in 1-2 sentences "
        "that capture its main point."
    ),
    SummaryStyle.BULLETED: (
        "Summarize the following personal note as 3-7 short bullet points, "
        "one idea per bullet, each line starting with \"- \". Keep any "
        "action items or deadlines as their own bullets."
    ),
    SummaryStyle.DETAILED: (
        "Write a detailed summary of the following personal note in one to "
        "three paragraphs. Preserve names, dates, numbers and decisions, and "
        "keep the note's original order of topics."
    ),
}


def build_prompt(content: str, style: SummaryStyle) -> str:
    """Full prompt for one summarization call."""
    instruction = STYLE_INSTRUCTIONS[SummaryStyle(style)]
    return f"{instruction}\n\n{_COMMON_RULES}\n\nNote:\n\"\"\"\n{content}\n\"\"\""
