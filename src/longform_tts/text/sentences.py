from __future__ import annotations

import re

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])(\s+)")

_CONJUNCTIONS = (
    "and",
    "but",
    "or",
    "so",
    "yet",
    "for",
    "nor",
    "however",
    "therefore",
    "moreover",
    "furthermore",
    "meanwhile",
    "nevertheless",
    "consequently",
    "thus",
    "then",
    "while",
    "although",
    "because",
)

# Natural seams in priority order.
_SEAMS: tuple[re.Pattern[str], ...] = (
    re.compile(r";"),
    re.compile(r":\s"),
    re.compile(r",\s+(?=(?:" + "|".join(_CONJUNCTIONS) + r")\b)", re.IGNORECASE),
    re.compile(r"\s*(?:—|--)\s*"),
    re.compile(r",\s"),
    re.compile(r"\s+"),
)

# A seam must fall past this fraction of the target length.
MIN_SEAM_FRACTION = 0.35

_TRAILING_SEAM_CHARS = " \t\r\n,;:-—"


def _close(head: str) -> str:
    head = head.rstrip(_TRAILING_SEAM_CHARS)
    if not head:
        return ""
    if head[-1] in ".!?":
        return head
    return head + "."


def _split_once(sentence: str, target: int) -> tuple[str, str]:
    window = sentence[: target + 1]
    min_pos = max(1, int(target * MIN_SEAM_FRACTION))
    for pattern in _SEAMS:
        best = None
        for m in pattern.finditer(window):
            if min_pos <= m.start() <= target:
                best = m
        if best is None:
            continue
        head = _close(sentence[: best.start()])
        if head:
            return head, sentence[best.end() :]
    # No acceptable seam: force a break at the target length.
    head = sentence[:target].rstrip() or sentence[:target]
    if head[-1] not in ".!?":
        head += "."
    return head, sentence[target:]


def split_long_sentence(sentence: str, max_sentence_length: int) -> list[str]:
    limit = int(max_sentence_length)
    if limit < 2:
        raise ValueError("max_sentence_length must be >= 2")
    target = limit - 1  # room for the inserted period
    out: list[str] = []
    rest = sentence
    while len(rest) > limit:
        head, rest = _split_once(rest, target)
        out.append(head)
        rest = rest.lstrip()
    if rest:
        out.append(rest)
    return out


def normalize_sentences(text: str, max_sentence_length: int = 300) -> str:
    """
    Break every sentence longer than `max_sentence_length` characters at its
    best natural seam so no sentence handed to the provider exceeds the limit.

    Sentences already within the limit (and the whitespace between sentences)
    are returned untouched, so the function is idempotent.
    """
    if not text:
        return text
    parts = _SENTENCE_SPLIT_RE.split(text)
    out: list[str] = []
    for i, part in enumerate(parts):
        if i % 2 == 1 or len(part) <= int(max_sentence_length):
            out.append(part)
            continue
        out.append(" ".join(split_long_sentence(part, max_sentence_length)))
    return "".join(out)


def iter_sentences(text: str) -> list[str]:
    return [p for i, p in enumerate(_SENTENCE_SPLIT_RE.split(text or "")) if i % 2 == 0 and p]
