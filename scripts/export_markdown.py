"""
Export transcribed chunks as a single Markdown book.

Reads out/<id>/content.json and metadata.json, splits the ordered chunks into
sections at the table-of-contents page boundaries, and writes out/<id>/book.md.
When metadata.json is missing or has no table of contents, a one-section
outline is synthesized (and saved back) so the export still runs.

Usage:
    python scripts/export_markdown.py --book-id mybook
"""

from __future__ import annotations

import argparse
import re
from pathlib import Path

from dotenv import load_dotenv

from book_types import (
    BookMetadata,
    CapturedPage,
    ContentChunk,
    Document,
    Section,
    TocEntry,
    TocLink,
    load_content_chunks,
    read_json,
    sort_chunks,
    write_bytes_atomic,
    write_json,
)
from env_settings import get_book_id

PAGE_IMAGE_RE = re.compile(r"^0*(\d+)-0*(\d+)\.png$")


def default_toc(chunks: list[ContentChunk]) -> list[TocEntry]:
    max_page = max((chunk.page or 0 for chunk in chunks), default=0)
    total = max_page or len(chunks)
    return [
        TocEntry(title="Content", page=1, total=total),
        TocEntry(title="End", page=None, total=total),
    ]


def slugify(title: str) -> str:
    return re.sub(r"[^0-9a-z]+", "-", title.lower())


def fold_paragraphs(text: str) -> str:
    """Keep blank-line paragraph breaks and fold every other newline into a space.

    A lone newline in OCR output is a visual line wrap, not a pause; leaving it
    in makes the narrator stop mid-sentence.
    """
    text = text.replace("\r", "")
    text = re.sub(r"[ \t]*\n[ \t]*", "\n", text)
    text = re.sub(r"\n{2,}", "\n\n", text)
    text = re.sub(r"(?<!\n)\n(?!\n)", " ", text)
    return text.strip()


def section_boundary(
    chunks: list[ContentChunk],
    toc: list[TocEntry],
    entry_index: int,
    cursor: int,
) -> int:
    next_entry = next(
        (entry for entry in toc[entry_index + 1 :] if entry.page is not None),
        None,
    )
    if next_entry is None:
        return len(chunks)

    boundary = next(
        (
            idx
            for idx, chunk in enumerate(chunks)
            if chunk.page is not None and chunk.page >= next_entry.page
        ),
        len(chunks),
    )
    if boundary < cursor:
        print(
            f"Warning: TOC entry '{next_entry.title}' starts at page {next_entry.page}, "
            f"before chunk {cursor} already assigned to '{toc[entry_index].title}'; "
            "clamping the section boundary."
        )
        boundary = cursor
    return boundary


def assemble_document(
    chunks: list[ContentChunk],
    toc: list[TocEntry] | None,
    title: str,
    authors: list[str],
) -> Document:
    ordered = sort_chunks(chunks)
    entries = list(toc) if toc else default_toc(ordered)

    sections: list[Section] = []
    last_used = -1
    cursor = 0
    # The final entry only marks where content ends.
    for i, entry in enumerate(entries[:-1]):
        if entry.page is None:
            continue
        boundary = section_boundary(ordered, entries, i, cursor)
        text = "\n\n".join(fold_paragraphs(chunk.text) for chunk in ordered[cursor:boundary])
        sections.append(Section(title=entry.title, text=text))
        last_used = i
        cursor = boundary

    links = [
        TocLink(title=entry.title, anchor=slugify(entry.title))
        for i, entry in enumerate(entries)
        if entry.page is not None and i <= last_used
    ]
    return Document(title=title, authors=list(authors), toc=links, sections=sections)


def render_markdown(document: Document) -> str:
    lines = [
        f"# {document.title}",
        "",
        f"By {', '.join(document.authors)}",
        "",
        "---",
        "",
        "## Table of Contents",
        "",
    ]
    lines.extend(f"- [{link.title}](#{link.anchor})" for link in document.toc)
    lines.extend(["", "---"])

    for section in document.sections:
        lines.extend(["", f"## {section.title}", "", section.text])

    return "\n".join(lines).rstrip() + "\n"


def scan_captured_pages(pages_dir: Path) -> list[CapturedPage]:
    pages: list[CapturedPage] = []
    if not pages_dir.exists():
        return pages
    for image_path in sorted(pages_dir.glob("*.png")):
        match = PAGE_IMAGE_RE.match(image_path.name)
        if not match:
            continue
        pages.append(
            CapturedPage(
                index=int(match.group(1)),
                page=int(match.group(2)),
                screenshot=f"{pages_dir.name}/{image_path.name}",
                total=0,
            )
        )
    pages.sort(key=lambda page: page.index)
    return pages


def load_or_synthesize_metadata(
    book_dir: Path,
    book_id: str,
    chunks: list[ContentChunk],
) -> BookMetadata:
    metadata_path = book_dir / "metadata.json"
    metadata: BookMetadata | None = None
    if metadata_path.exists():
        try:
            metadata = BookMetadata.from_dict(read_json(metadata_path), book_id)
        except Exception as exc:
            print(f"Warning: {metadata_path.name} could not be parsed ({exc}).")
            metadata = None

    if metadata is not None and metadata.toc:
        return metadata

    toc = default_toc(chunks)
    pages = metadata.pages if metadata and metadata.pages else scan_captured_pages(book_dir / "pages")
    pages = [
        CapturedPage(index=p.index, page=p.page, screenshot=p.screenshot, total=toc[0].total)
        for p in pages
    ]
    synthesized = BookMetadata(
        book_id=book_id,
        title=metadata.title if metadata else book_id,
        authors=metadata.authors if metadata else ["Unknown"],
        toc=toc,
        pages=pages,
    )
    print(f"Warning: no usable table of contents; using a single '{toc[0].title}' section.")
    try:
        write_json(metadata_path, synthesized.to_dict())
        print(f"Saved synthesized metadata: {metadata_path}")
    except OSError as exc:
        print(f"Warning: could not write {metadata_path.name} ({exc}).")
    return synthesized


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Export transcribed pages as Markdown")
    parser.add_argument("--book-id", default=get_book_id(), help="Book id (maps to out/<id>)")
    parser.add_argument("--out-dir", default="out", help="Output root (default: out)")
    args = parser.parse_args(argv)

    if not args.book_id:
        print("Error: BOOK_ID or IA_ID (or ASIN) is required.")
        return 1

    book_dir = Path(args.out_dir) / args.book_id
    content_path = book_dir / "content.json"
    book_markdown_path = book_dir / "book.md"

    if not content_path.exists():
        print(f"Error: content not found: {content_path}")
        return 1
    try:
        chunks = load_content_chunks(content_path)
    except Exception as exc:
        print(f"Error: {content_path.name} could not be parsed: {exc}")
        return 1
    if not chunks:
        print("Error: no book content found.")
        return 1

    metadata = load_or_synthesize_metadata(book_dir, args.book_id, chunks)
    document = assemble_document(chunks, metadata.toc, metadata.title, metadata.authors)
    write_bytes_atomic(book_markdown_path, render_markdown(document).encode("utf-8"))

    print(
        f"Wrote {book_markdown_path} "
        f"({len(document.sections)} sections from {len(chunks)} chunks)"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
