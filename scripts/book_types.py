"""
Shared records for the capture, transcription, and export stages.

Each stage writes one durable artifact under out/<book-id>/ and the next stage
reads it back, so every record here round-trips through plain JSON.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


def parse_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None
    return parsed


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write bytes through a temp sibling so readers never see a partial file."""
    temp_path = path.with_name(path.name + ".tmp")
    try:
        temp_path.write_bytes(data)
        temp_path.replace(path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def write_json(path: Path, payload: Any) -> None:
    text = json.dumps(payload, indent=2, default=str) + "\n"
    write_bytes_atomic(path, text.encode("utf-8"))


@dataclass(frozen=True)
class ViewerObservation:
    page_number: int | None
    total_pages: int | None
    content_signature: str
    title: str | None = None
    author: str | None = None


@dataclass(frozen=True)
class CapturedPage:
    index: int
    page: int
    screenshot: str
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "page": self.page,
            "total": self.total,
            "screenshot": self.screenshot,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> CapturedPage | None:
        if not isinstance(payload, dict):
            return None
        index = parse_int(payload.get("index"))
        page = parse_int(payload.get("page"))
        screenshot = payload.get("screenshot")
        if index is None or page is None or not isinstance(screenshot, str):
            return None
        return cls(
            index=index,
            page=page,
            screenshot=screenshot,
            total=parse_int(payload.get("total")) or 0,
        )


@dataclass(frozen=True)
class ContentChunk:
    index: int
    page: int | None
    text: str
    screenshot: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "page": self.page,
            "text": self.text,
            "screenshot": self.screenshot,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> ContentChunk | None:
        if not isinstance(payload, dict):
            return None
        index = parse_int(payload.get("index"))
        text = payload.get("text")
        screenshot = payload.get("screenshot")
        if index is None or not isinstance(text, str) or not text.strip():
            return None
        if not isinstance(screenshot, str):
            screenshot = ""
        return cls(
            index=index,
            page=parse_int(payload.get("page")),
            text=text,
            screenshot=screenshot,
        )


@dataclass(frozen=True)
class TocEntry:
    title: str
    page: int | None
    total: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "page": self.page, "total": self.total}

    @classmethod
    def from_dict(cls, payload: Any) -> TocEntry | None:
        if not isinstance(payload, dict):
            return None
        raw_title = payload.get("title")
        if not isinstance(raw_title, str):
            return None
        title = " ".join(raw_title.split())
        if not title:
            return None
        return cls(
            title=title,
            page=parse_int(payload.get("page")),
            total=parse_int(payload.get("total")) or 0,
        )


@dataclass(frozen=True)
class TocLink:
    title: str
    anchor: str


@dataclass(frozen=True)
class Section:
    title: str
    text: str


@dataclass(frozen=True)
class Document:
    title: str
    authors: list[str]
    toc: list[TocLink]
    sections: list[Section]


@dataclass
class BookMetadata:
    book_id: str
    title: str
    authors: list[str]
    toc: list[TocEntry] = field(default_factory=list)
    pages: list[CapturedPage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "info": {},
            "meta": {
                "asin": self.book_id,
                "title": self.title,
                "authorList": list(self.authors),
            },
            "toc": [entry.to_dict() for entry in self.toc],
            "pages": [page.to_dict() for page in self.pages],
        }

    @classmethod
    def from_dict(cls, payload: Any, book_id: str) -> BookMetadata | None:
        if not isinstance(payload, dict):
            return None
        meta = payload.get("meta")
        if not isinstance(meta, dict):
            return None

        raw_title = meta.get("title")
        title = raw_title.strip() if isinstance(raw_title, str) else ""
        raw_authors = meta.get("authorList")
        authors = []
        if isinstance(raw_authors, list):
            authors = [x.strip() for x in raw_authors if isinstance(x, str) and x.strip()]

        raw_toc = payload.get("toc")
        toc = []
        if isinstance(raw_toc, list):
            toc = [entry for entry in map(TocEntry.from_dict, raw_toc) if entry]

        raw_pages = payload.get("pages")
        pages = []
        if isinstance(raw_pages, list):
            pages = [page for page in map(CapturedPage.from_dict, raw_pages) if page]

        raw_id = meta.get("asin")
        return cls(
            book_id=str(raw_id) if raw_id else book_id,
            title=title or book_id,
            authors=authors or ["Unknown"],
            toc=toc,
            pages=pages,
        )


def chunk_sort_key(chunk: ContentChunk) -> tuple[int, bool, int]:
    return (chunk.index, chunk.page is None, chunk.page or 0)


def sort_chunks(chunks: list[ContentChunk]) -> list[ContentChunk]:
    return sorted(chunks, key=chunk_sort_key)


def load_content_chunks(path: Path) -> list[ContentChunk]:
    payload = read_json(path)
    if not isinstance(payload, list):
        raise ValueError(f"{path.name} is not a list of chunks")
    return [chunk for chunk in map(ContentChunk.from_dict, payload) if chunk]


def save_content_chunks(path: Path, chunks: list[ContentChunk]) -> None:
    write_json(path, [chunk.to_dict() for chunk in sort_chunks(chunks)])
