from __future__ import annotations

from dataclasses import dataclass

from longform_tts.errors import ValidationError

_WHITESPACE = frozenset(b" \n\r\t")
_SENTENCE_END = frozenset(b".!?")
_EMERGENCY_CUT_BYTES = 1000


@dataclass(frozen=True, slots=True)
class TextChunk:
    index: int
    text: str
    byte_size: int
    start_byte: int
    end_byte: int  # exclusive


def byte_size(text: str) -> int:
    return len(text.encode("utf-8"))


def _align(data: bytes, start: int, end: int) -> int:
    # Never cut inside a multi-byte sequence (10xxxxxx continuation bytes).
    while start < end < len(data) and (data[end] & 0xC0) == 0x80:
        end -= 1
    return end


def _find_cut(data: bytes, start: int, limit: int, lookback: int) -> int:
    floor = max(start + 1, limit - int(lookback))
    for i in range(limit - 1, floor - 1, -1):
        if data[i] in _WHITESPACE:
            return i + 1
    for i in range(limit - 1, floor - 1, -1):
        if data[i] in _SENTENCE_END:
            return i + 1
    return limit


def chunk_text(
    text: str,
    max_bytes: int = 5000,
    *,
    safety_ratio: float = 0.04,
    lookback: int = 300,
) -> list[TextChunk]:
    """
    Split `text` into contiguous chunks whose UTF-8 size never exceeds `max_bytes`.

    Each chunk targets `max_bytes` minus the safety margin and prefers to end
    after whitespace, then after sentence punctuation, within `lookback` bytes of
    that target. Concatenating the chunk texts in order reproduces `text`.
    """
    if int(max_bytes) <= 0:
        raise ValidationError("max_bytes must be > 0")
    if not text:
        return []

    data = text.encode("utf-8")
    total = len(data)
    safe = max(1, int(int(max_bytes) * (1.0 - float(safety_ratio))))

    chunks: list[TextChunk] = []
    pos = 0
    while pos < total:
        remaining = total - pos
        if remaining <= safe:
            end = total
        else:
            end = _find_cut(data, pos, pos + safe, lookback)
        end = _align(data, pos, end)
        if end <= pos:
            raise ValidationError(
                f"max_bytes={max_bytes} cannot hold the character at byte {pos}"
            )

        piece = data[pos:end].decode("utf-8")
        size = byte_size(piece)
        while size > int(max_bytes):
            shrunk = int((end - pos) * 0.9)
            if shrunk < 1:
                shrunk = min(_EMERGENCY_CUT_BYTES, remaining, int(max_bytes))
                end = _align(data, pos, pos + shrunk)
                if end <= pos:
                    raise ValidationError(
                        f"max_bytes={max_bytes} cannot hold the character at byte {pos}"
                    )
                piece = data[pos:end].decode("utf-8")
                size = byte_size(piece)
                break
            end = _align(data, pos, pos + shrunk)
            if end <= pos:
                continue
            piece = data[pos:end].decode("utf-8")
            size = byte_size(piece)

        chunks.append(
            TextChunk(index=len(chunks), text=piece, byte_size=size, start_byte=pos, end_byte=end)
        )
        pos = end
    return chunks


def verify_chunks(chunks: list[TextChunk], max_bytes: int) -> None:
    """
    Re-measure every chunk before dispatch; the provider rejects oversized
    requests outright.
    """
    for c in chunks:
        actual = byte_size(c.text)
        if actual != c.byte_size or actual > int(max_bytes):
            raise ValidationError(
                f"chunk {c.index} is {actual} bytes (recorded {c.byte_size}, limit {max_bytes})"
            )
