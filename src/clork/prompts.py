"""Text heuristics for spotting an agent that is waiting on the user.

Two independent checks, each an ordered list of matchers:

- ``looks_like_permission_prompt`` runs on raw (non-JSON) output lines and
  guesses whether the agent printed an interactive permission prompt.
- ``detect_question`` runs on the accumulated result text of a finished
  task and decides whether the agent ended by asking the user something.

Matchers are plain callables ``str -> bool`` so callers can extend or
replace the lists.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence

Matcher = Callable[[str], bool]


def pattern_matcher(pattern: str, flags: int = 0) -> Matcher:
    compiled = re.compile(pattern, flags)

    def _match(text: str) -> bool:
        return compiled.search(text) is not None

    _match.__name__ = f"match_{pattern}"
    return _match


PERMISSION_PROMPT_MATCHERS: list[Matcher] = [
    pattern_matcher(p, re.IGNORECASE)
    for p in (
        r"do you want to",
        r"allow.*tool",
        r"permission",
        r"\(y/n\)",
        r"\[y/N\]",
        r"approve",
    )
]

# Sign-offs that end with a question mark-ish phrase but do not need an answer.
POLITE_CLOSING_MATCHERS: list[Matcher] = [
    pattern_matcher(r"궁금한\s*점이\s*있으시면"),
    pattern_matcher(r"도움이\s*필요하시면"),
    pattern_matcher(r"다른\s*질문이\s*있으면"),
    pattern_matcher(r"추가\s*질문이\s*있으시면"),
    pattern_matcher(r"문의.*있으시면"),
    pattern_matcher(r"필요한.*있으시면"),
    pattern_matcher(r"if you have any questions", re.IGNORECASE),
    pattern_matcher(r"feel free to ask", re.IGNORECASE),
    pattern_matcher(r"let me know if you need", re.IGNORECASE),
    pattern_matcher(r"don'?t hesitate to ask", re.IGNORECASE),
]

QUESTION_MATCHERS: list[Matcher] = [
    # Korean
    pattern_matcher(r"할까요\s*\?"),
    pattern_matcher(r"하시겠습니까\s*\?"),
    pattern_matcher(r"선택해\s*주세요"),
    pattern_matcher(r"알려\s*주세요"),
    pattern_matcher(r"진행할까요\s*\?"),
    pattern_matcher(r"원하시나요\s*\?"),
    pattern_matcher(r"괜찮을까요\s*\?"),
    pattern_matcher(r"될까요\s*\?"),
    pattern_matcher(r"드릴까요\s*\?"),
    pattern_matcher(r"줄까요\s*\?"),
    pattern_matcher(r"어떤.*좋을까요\s*\?"),
    pattern_matcher(r"어떻게.*할까요\s*\?"),
    pattern_matcher(r"맞을까요\s*\?"),
    pattern_matcher(r"싶으신가요\s*\?"),
    # English
    pattern_matcher(r"\bshould I\b", re.IGNORECASE),
    pattern_matcher(r"\bwould you like\b", re.IGNORECASE),
    pattern_matcher(r"\bwhich (approach|option|method|way|one)\b", re.IGNORECASE),
    pattern_matcher(r"\bdo you want\b", re.IGNORECASE),
    pattern_matcher(r"\bplease (choose|select|pick|decide)\b", re.IGNORECASE),
    pattern_matcher(r"\blet me know\b", re.IGNORECASE),
    pattern_matcher(r"\bwhat would you prefer\b", re.IGNORECASE),
    pattern_matcher(r"\bshall I\b", re.IGNORECASE),
    pattern_matcher(r"\bwould you prefer\b", re.IGNORECASE),
]

_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)


def any_match(text: str, matchers: Sequence[Matcher]) -> bool:
    return any(matcher(text) for matcher in matchers)


def looks_like_permission_prompt(
    text: str, matchers: Sequence[Matcher] = PERMISSION_PROMPT_MATCHERS
) -> bool:
    return any_match(text, matchers)


def strip_code_blocks(text: str) -> str:
    return _CODE_BLOCK_RE.sub("", text)


def detect_question(
    text: str,
    *,
    questions: Sequence[Matcher] = QUESTION_MATCHERS,
    closings: Sequence[Matcher] = POLITE_CLOSING_MATCHERS,
) -> bool:
    """True when *text* ends a task by asking the user to decide something.

    Fenced code is ignored, and a polite closing anywhere vetoes a match.
    """
    if not text or not text.strip():
        return False
    stripped = strip_code_blocks(text)
    if any_match(stripped, closings):
        return False
    return any_match(stripped, questions)
