"""
Text cleaning and chunking utilities for documents written to the vector index.
"""

from typing import List, Sequence

DEFAULT_SEPARATORS = ('\n\n', '\n', '|', ' ')
MAX_OVERLAP_RATIO = 0.2


def clean_text(text: str) -> str:
    """Strip NUL characters, normalize newlines and trim the text."""
    if not text:
        return ''
    return text.replace('\x00', '').replace('\r\n', '\n').replace('\r', '\n').strip()


def chunk_text(text: str,
               max_chars: int = 1500,
               overlap: int = 300,
               separators: Sequence[str] = DEFAULT_SEPARATORS) -> List[str]:
    """
    Split text into overlapping chunks, preferring to break on separators.

    The overlap is capped at a fifth of the chunk size. A chunk ends on the
    last separator found in its second half, trying separators in order;
    if none is found the chunk is cut at max_chars.

    Args:
        text: Text to chunk
        max_chars: Maximum characters per chunk
        overlap: Requested number of characters shared by consecutive chunks
        separators: Break points in order of preference

    Returns:
        List of chunk strings (a single element for short texts, empty for empty text)

    Raises:
        ValueError: If max_chars is not positive
    """
    if max_chars <= 0:
        raise ValueError(f'max_chars must be positive, got {max_chars}')

    if not text:
        return []
    if len(text) <= max_chars:
        return [text]

    overlap = max(0, min(overlap, int(max_chars * MAX_OVERLAP_RATIO)))
    chunks = []
    start = 0
    text_length = len(text)

    while start < text_length:
        end = min(start + max_chars, text_length)

        if end < text_length:
            window = text[start:end]
            for separator in separators:
                position = window.rfind(separator)
                if position >= max_chars // 2:
                    end = start + position + len(separator)
                    break

        chunk = text[start:end].strip()
        if chunk:
            chunks.append(chunk)

        if end >= text_length:
            break

        start = max(end - overlap, start + 1)

    return chunks
