"""
Deterministic text chunking for manual ingestion.

Chunking is designed to be:
- Deterministic: Same input always produces same chunks (and content hashes)
- Page-aware: Every chunk carries the page span it was cut from
- Overlap-aware: Chunks overlap so procedures are not split mid-context

Two strategies live here:
- create_chunks(): boundary-seeking chunker used at ingestion time
- rechunk_fixed(): fixed-window chunker used by re-ingestion/backfill
"""
import re
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Default chunking parameters (overridable from settings)
DEFAULT_CHUNK_SIZE = 500  # target characters per chunk
DEFAULT_CHUNK_OVERLAP = 135  # characters shared by consecutive chunks
MIN_CHUNK_SIZE = 200  # fragments below this are dropped (except the first)

# Fixed-window re-chunking
REINGEST_CHUNK_SIZE = 400
REINGEST_CHUNK_OVERLAP = 125
MIN_SLICE_SIZE = 50  # a trailing slice shorter than this (stripped) ends the loop

PAGE_MARKER = re.compile(r'^### Page (\d+)', re.MULTILINE)


@dataclass
class ManualChunk:
    """A chunk of manual text with its page span."""
    index: int
    content: str
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    section_heading: Optional[str] = None
    menu_path: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.content)

    @property
    def token_count(self) -> int:
        # Roughly 4 characters per token
        return max(1, len(self.content) // 4)

    @property
    def content_hash(self) -> str:
        return compute_content_hash(self.content)


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of chunk content, the per-manual dedup key."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def normalize_whitespace(text: str) -> str:
    """
    Normalize whitespace in text for consistent chunking.

    - Converts line endings to \\n
    - Collapses runs of spaces/tabs
    - Preserves paragraph breaks (double newlines)
    - Strips leading/trailing whitespace

    Args:
        text: Raw text input

    Returns:
        Normalized text
    """
    text = text.replace('\r\n', '\n').replace('\r', '\n')

    # Keep paragraph breaks as exactly one blank line
    text = re.sub(r'\n\s*\n', '\n\n', text)

    text = re.sub(r'[^\S\n]+', ' ', text)

    lines = [line.strip() for line in text.split('\n')]
    text = '\n'.join(lines)

    text = re.sub(r'\n{3,}', '\n\n', text)

    return text.strip()


def _last_index(text: str, sub: str, pos: int) -> int:
    """Index of the last occurrence of sub starting at or before pos, or -1."""
    return text.rfind(sub, 0, pos + len(sub))


def find_break_point(
    text: str,
    start: int,
    target_end: int,
    min_chunk_size: int = MIN_CHUNK_SIZE
) -> int:
    """
    Choose where the chunk starting at `start` should end.

    Tries, in order:
    1. The last paragraph break at or before target_end
    2. The last sentence break at or before target_end
    3. target_end itself

    A boundary only counts when it leaves more than min_chunk_size
    characters in the chunk.
    """
    if target_end >= len(text):
        return target_end

    paragraph_break = _last_index(text, '\n\n', target_end)
    if paragraph_break > start and paragraph_break - start > min_chunk_size:
        return paragraph_break + 2

    sentence_break = max(
        _last_index(text, '. ', target_end),
        _last_index(text, '.\n', target_end),
        _last_index(text, '!\n', target_end),
        _last_index(text, '?\n', target_end),
    )
    if sentence_break > start and sentence_break - start > min_chunk_size:
        return sentence_break + 1

    return target_end


def create_chunks(
    text: str,
    page_start: Optional[int] = None,
    page_end: Optional[int] = None,
    section_heading: Optional[str] = None,
    menu_path: Optional[str] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = MIN_CHUNK_SIZE,
) -> List[ManualChunk]:
    """
    Split one page (or section) of text into overlapping chunks.

    The section heading, when known, is prefixed as "[heading]" so every
    chunk of the section can be matched on it. Fragments shorter than
    min_chunk_size are dropped unless they are the first chunk.

    Args:
        text: Page text
        page_start / page_end: Page span copied onto every chunk
        section_heading: Optional heading to prefix
        menu_path: Optional menu path copied onto every chunk
        chunk_size: Target chunk size in characters
        chunk_overlap: Characters to step back after each chunk
        min_chunk_size: Minimum chunk size

    Returns:
        List of ManualChunk objects (index is local to this call)
    """
    prefix = f"[{section_heading}]\n\n" if section_heading else ''
    full_text = prefix + (text or '')

    if not full_text.strip():
        return []

    chunks: List[ManualChunk] = []
    start = 0

    while start < len(full_text):
        end = find_break_point(full_text, start, start + chunk_size, min_chunk_size)

        content = full_text[start:end].strip()
        if content and (len(content) >= min_chunk_size or start == 0):
            chunks.append(ManualChunk(
                index=len(chunks),
                content=content,
                page_start=page_start,
                page_end=page_end,
                section_heading=section_heading,
                menu_path=menu_path,
            ))

        if end >= len(full_text):
            break

        start = end - chunk_overlap

    return chunks


def split_markdown_pages(markdown: str) -> List[Dict]:
    """
    Split parsed markdown on "### Page N" markers.

    Text before the first marker is ignored. Returns dicts with
    page_number and content (content includes the marker line).
    """
    pages = []
    matches = list(PAGE_MARKER.finditer(markdown or ''))

    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(markdown)
        pages.append({
            'page_number': int(match.group(1)),
            'content': markdown[match.start():end].strip(),
        })

    return pages


def chunk_pages(
    pages: List[Dict],
    section_headings: Optional[Dict[int, str]] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    min_chunk_size: int = MIN_CHUNK_SIZE,
) -> List[ManualChunk]:
    """
    Chunk a list of pages ({page_number, content, section_heading?, menu_path?}).

    Chunk indices are global across the manual and stable for the same input.
    """
    section_headings = section_headings or {}
    all_chunks: List[ManualChunk] = []

    for page in pages:
        page_number = page.get('page_number')
        heading = page.get('section_heading') or section_headings.get(page_number)
        page_chunks = create_chunks(
            normalize_whitespace(page.get('content') or ''),
            page_start=page_number,
            page_end=page_number,
            section_heading=heading,
            menu_path=page.get('menu_path'),
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            min_chunk_size=min_chunk_size,
        )
        for chunk in page_chunks:
            chunk.index = len(all_chunks)
            all_chunks.append(chunk)

    logger.info(f"Created {len(all_chunks)} chunks from {len(pages)} pages")

    return all_chunks


def chunk_markdown_by_page(
    markdown: str,
    section_headings: Optional[Dict[int, str]] = None,
    **kwargs
) -> List[ManualChunk]:
    """Chunk parsed markdown page by page."""
    return chunk_pages(split_markdown_pages(markdown), section_headings, **kwargs)


def rechunk_fixed(
    text: str,
    chunk_size: int = REINGEST_CHUNK_SIZE,
    chunk_overlap: int = REINGEST_CHUNK_OVERLAP,
) -> List[str]:
    """
    Cut text into fixed windows stepping by chunk_size - chunk_overlap.

    Stops after the window that reaches the end of the text, or at the
    first window whose stripped text is shorter than MIN_SLICE_SIZE
    characters. Text that already fits one window comes back as a single slice,
    so re-chunking its own output is stable.
    """
    step = chunk_size - chunk_overlap
    if step <= 0:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    slices = []
    offset = 0
    while offset < len(text):
        window = text[offset:offset + chunk_size]
        if len(window.strip()) < MIN_SLICE_SIZE:
            break
        slices.append(window.strip())
        if offset + chunk_size >= len(text):
            break
        offset += step

    return slices
