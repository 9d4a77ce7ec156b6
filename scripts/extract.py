"""
Opens a book in the Internet Archive BookReader via Playwright, screenshots
each spread, and writes metadata.json for the transcription step. Stops at
the page cap, at the reported last page, or when the reader stops turning.

Usage:
    python scripts/extract.py [--book-id ID | --url URL] [--start-page 1]
                              [--resume] [--max-pages 0] [--max-retries 10]
                              [--out-dir out] [--headless]

Requires IA_EMAIL and IA_PASSWORD. The browser profile is kept under
out/<id>/data so later runs reuse the archive.org session.
"""

import argparse
import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from book_types import (
    BookMetadata,
    CapturedPage,
    TocEntry,
    ViewerObservation,
    write_bytes_atomic,
    write_json,
)
from bookreader import (
    BookReaderViewer,
    ensure_logged_in,
    launch_reader_context,
    open_reader,
    parse_book_id_from_url,
)
from env_settings import DEFAULT_PROVISIONAL_TOTAL, CaptureSettings, env_str
from reader_state import clean_title, has_advanced

EMPTY_OBSERVATION = ViewerObservation(page_number=None, total_pages=None, content_signature="")


class CaptureState(Enum):
    INITIALIZING = "initializing"
    POSITIONING = "positioning"
    CAPTURE_READY = "capture_ready"
    CAPTURING = "capturing"
    ADVANCING = "advancing"
    ADVANCE_RETRYING = "advance_retrying"
    TERMINATED = "terminated"


@dataclass
class CaptureResult:
    """Outcome of one capture run."""

    pages: list
    total_pages: int
    stop_reason: str
    title: str | None = None
    author: str | None = None
    recaptures: int = 0


def sanitize_slug(value):
    """Convert a string into a filesystem-safe slug."""
    return re.sub(r"[^a-zA-Z0-9._-]+", "-", value).strip("-") or "book"


def content_hash(data):
    """Return the SHA-1 hex digest of captured image bytes."""
    return hashlib.sha1(data).hexdigest()


def capture_filename(index, page_number, pad):
    """Return the zero-padded <index>-<page>.png name for a capture."""
    return f"{index:0{pad}d}-{page_number:0{pad}d}.png"


def clear_previous_capture(book_dir):
    """Remove screenshots and derived files left by an earlier capture of this book."""
    removed = 0
    pages_dir = book_dir / "pages"
    if pages_dir.exists():
        for path in [*pages_dir.glob("*.png"), *pages_dir.glob("*.tmp")]:
            path.unlink()
            removed += 1
    for name in ("metadata.json", "content.json", "failures.json"):
        path = book_dir / name
        if path.exists():
            path.unlink()
            removed += 1
    if removed:
        print(f"Info: cleared {removed} files from a previous capture in {book_dir}")
    return removed



class CaptureStateMachine:
    """Drive a paginated viewer forward one spread at a time.

    The loop always captures before it advances, and advances once per
    iteration. The viewer is any object with the BookReaderViewer methods,
    which keeps this class free of Playwright.
    """

    def __init__(self, viewer, pages_dir, settings):
        self.viewer = viewer
        self.pages_dir = Path(pages_dir)
        self.settings = settings
        self.state = CaptureState.INITIALIZING
        self.advance_strategies = [
            ("native-next", viewer.invoke_native_next),
            ("next-control", viewer.click_next_control),
            ("arrow-key", viewer.press_next_key),
        ]
        self.pages = []
        self.observation = None
        self.reported_total = None
        self.capture_until = 0
        self.index_pad = 2
        self.last_hash = None
        self.advance_attempts = 0
        self.recaptures = 0
        self.stop_reason = None
        self._handlers = {
            CaptureState.INITIALIZING: self._initialize,
            CaptureState.POSITIONING: self._position,
            CaptureState.CAPTURE_READY: self._capture_ready,
            CaptureState.CAPTURING: self._capture,
            CaptureState.ADVANCING: self._advance,
            CaptureState.ADVANCE_RETRYING: self._advance_retry,
        }

    def run(self):
        """Run until terminated and return a CaptureResult."""
        try:
            while self.state is not CaptureState.TERMINATED:
                self.state = self._handlers[self.state]()
        except KeyboardInterrupt:
            print(f"\nStopped after {len(self.pages)} captures.")
            self.stop_reason = "interrupted"
            self.state = CaptureState.TERMINATED
        except PlaywrightError as exc:
            print(f"Error: capture stopped after {len(self.pages)} pages: {exc}")
            self.stop_reason = "error"
            self.state = CaptureState.TERMINATED
        return self._finish()

    def _observe(self):
        """Observe the viewer, keeping the last good observation if the frame is unreadable."""
        current = self.viewer.observe()
        if current is None:
            return self.observation or EMPTY_OBSERVATION
        return current

    def _initialize(self):
        self.viewer.locate_reader()
        self.observation = self._observe()
        self.reported_total = self.observation.total_pages

        max_pages = self.settings.max_pages
        if self.reported_total:
            total = self.reported_total
        else:
            total = max_pages if max_pages > 0 else DEFAULT_PROVISIONAL_TOTAL
            print(f"Warning: reader did not report a page count; provisional cap is {total}.")
        self.capture_until = min(total, max_pages) if max_pages > 0 else total
        self.index_pad = max(2, len(str(self.capture_until)))
        return CaptureState.POSITIONING

    def _position(self):
        if self.settings.resume:
            print("Info: resume requested; capturing from the reader's current position.")
        elif self.settings.start_page >= 1:
            if self.viewer.jump_to_page(self.settings.start_page):
                print(f"Info: positioned reader at page {self.settings.start_page}.")
            else:
                print(f"Warning: could not position reader at page {self.settings.start_page}.")
        return CaptureState.CAPTURE_READY

    def _capture_ready(self):
        self.viewer.wait_until_stable()
        self.observation = self._observe()
        return CaptureState.CAPTURING

    def _capture(self):
        index = len(self.pages)
        image = self.viewer.capture_spread()
        image_hash = content_hash(image)

        if self.pages and image_hash == self.last_hash:
            # The viewer lagged behind the turn; nudge it once and recapture once.
            print(f"[{index}] Info: capture matches the previous spread; recapturing once.")
            self._advance_once()
            self.observation = self._observe()
            image = self.viewer.capture_spread()
            image_hash = content_hash(image)
            self.recaptures += 1

        page_number = self.observation.page_number or index + 1
        total = self.reported_total or self.capture_until
        screenshot_path = self.pages_dir / capture_filename(index, page_number, self.index_pad)
        write_bytes_atomic(screenshot_path, image)

        self.pages.append(
            CapturedPage(
                index=index,
                page=page_number,
                screenshot=f"{self.pages_dir.name}/{screenshot_path.name}",
                total=total,
            )
        )
        self.last_hash = image_hash
        print(f"[{index}] Captured page {page_number} of {total}: {screenshot_path}")

        if self.reported_total and page_number >= self.reported_total:
            print(f"Reached the last page ({page_number} of {self.reported_total}). Done!")
            self.stop_reason = "reported-total"
            return CaptureState.TERMINATED
        if len(self.pages) >= self.capture_until:
            print(f"Done - captured {len(self.pages)} pages (cap {self.capture_until}).")
            self.stop_reason = "page-limit"
            return CaptureState.TERMINATED
        return CaptureState.ADVANCING

    def _advance_once(self):
        """Try each advance strategy in order until the viewer shows a change."""
        previous = self.observation
        for name, strategy in self.advance_strategies:
            try:
                strategy()
                self.viewer.wait_until_stable()
                current = self.viewer.observe()
            except PlaywrightError as exc:
                print(f"Warning: {name} did not complete ({exc}).")
                continue
            # An unreadable frame is no evidence of a turn.
            if current is not None and has_advanced(previous, current):
                self.observation = current
                return name
        return None

    def _advance(self):
        self.advance_attempts = 1
        if self._advance_once():
            return CaptureState.CAPTURE_READY
        return CaptureState.ADVANCE_RETRYING

    def _advance_retry(self):
        max_attempts = max(1, self.settings.max_retries)
        while self.advance_attempts < max_attempts:
            self.advance_attempts += 1
            print(
                "Info: reader did not turn; retrying "
                f"({self.advance_attempts}/{max_attempts})..."
            )
            self.viewer.attempt_borrow()
            strategy = self._advance_once()
            if strategy:
                print(f"Info: page turn confirmed via {strategy}.")
                return CaptureState.CAPTURE_READY

        print(
            f"Warning: no visual change after {self.advance_attempts} attempts; "
            "stopping early."
        )
        self.stop_reason = "stagnation"
        return CaptureState.TERMINATED

    def _finish(self):
        if self.reported_total:
            total_pages = self.reported_total
        elif self.pages:
            total_pages = self.pages[-1].page
        else:
            total_pages = 0

        title = self.observation.title if self.observation else None
        author = self.observation.author if self.observation else None
        return CaptureResult(
            pages=list(self.pages),
            total_pages=total_pages,
            stop_reason=self.stop_reason,
            title=title,
            author=author,
            recaptures=self.recaptures,
        )


def build_capture_metadata(book_id, result):
    """Build metadata.json for the export step from a capture result."""
    title = clean_title(result.title) or book_id
    total = result.total_pages
    return BookMetadata(
        book_id=book_id,
        title=title,
        authors=[result.author] if result.author else ["Unknown"],
        toc=[
            TocEntry(title=title, page=1, total=total),
            TocEntry(title="End", page=None, total=total),
        ],
        pages=[
            CapturedPage(index=p.index, page=p.page, screenshot=p.screenshot, total=total)
            for p in result.pages
        ],
    )


def main(argv=None):
    load_dotenv()
    defaults = CaptureSettings.from_env()

    parser = argparse.ArgumentParser(description="Capture an Internet Archive book page by page")
    parser.add_argument("--book-id", default=env_str("IA_ID"), help="archive.org item id")
    parser.add_argument("--url", default=env_str("IA_URL"), help="archive.org details URL")
    parser.add_argument("--out-dir", default="out", help="Output root (default: out)")
    parser.add_argument(
        "--start-page",
        type=int,
        default=defaults.start_page,
        help=f"Page to start capturing from (default: {defaults.start_page})",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        default=defaults.resume,
        help="Keep the reader's current position instead of jumping to --start-page",
    )
    parser.add_argument(
        "--max-pages",
        type=int,
        default=defaults.max_pages,
        help="Maximum spreads to capture (0 = until the end)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=defaults.max_retries,
        help=f"Advance attempts before stopping early (default: {defaults.max_retries})",
    )
    parser.add_argument(
        "--headless",
        action="store_true",
        default=defaults.headless,
        help="Run the browser without a window",
    )
    args = parser.parse_args(argv)

    book_id = args.book_id or parse_book_id_from_url(args.url)
    if not book_id:
        print("Error: IA_ID or a resolvable IA_URL is required.")
        return 1
    email = env_str("IA_EMAIL")
    password = env_str("IA_PASSWORD")
    if not email or not password:
        print("Error: IA_EMAIL and IA_PASSWORD are required.")
        return 1
    if args.start_page < 1:
        parser.error("--start-page must be >= 1")
    if args.max_pages < 0:
        parser.error("--max-pages must be >= 0")

    settings = CaptureSettings(
        start_page=args.start_page,
        resume=args.resume,
        max_pages=args.max_pages,
        max_retries=args.max_retries,
        tile_stable_ms=defaults.tile_stable_ms,
        page_delay_ms=defaults.page_delay_ms,
        spinner_timeout_ms=defaults.spinner_timeout_ms,
        reader_timeout_ms=defaults.reader_timeout_ms,
        headless=args.headless,
    )
    return capture_book(book_id, args.url, Path(args.out_dir), settings, email, password)


def capture_book(book_id, url, out_root, settings, email, password):
    """Log in, open the reader, run the capture loop, and write metadata.json."""
    book_dir = out_root / sanitize_slug(book_id)
    pages_dir = book_dir / "pages"
    data_dir = book_dir / "data"
    clear_previous_capture(book_dir)
    pages_dir.mkdir(parents=True, exist_ok=True)
    metadata_path = book_dir / "metadata.json"
    base_url = url or f"https://archive.org/details/{book_id}"

    with sync_playwright() as p:
        ensure_logged_in(p, base_url, email, password, data_dir, headless=settings.headless)

        context = launch_reader_context(p, data_dir, headless=settings.headless)
        try:
            page = context.new_page()
            start_page = 0 if settings.resume else settings.start_page
            try:
                frame = open_reader(
                    page,
                    book_id,
                    url,
                    reader_timeout_ms=settings.reader_timeout_ms,
                    start_page=start_page,
                )
            except TimeoutError as exc:
                print(f"Error: {exc}")
                return 1

            viewer = BookReaderViewer(page, frame, settings)
            print(f"Saving spread screenshots to {pages_dir}")
            print("Press Ctrl+C to stop; captured pages are kept.\n")
            try:
                result = CaptureStateMachine(viewer, pages_dir, settings).run()
            except TimeoutError as exc:
                print(f"Error: {exc}")
                return 1
        finally:
            context.close()

    print(
        "Capture summary: "
        f"pages={len(result.pages)} total={result.total_pages} "
        f"recaptures={result.recaptures} stop={result.stop_reason}"
    )
    if not result.pages:
        print("Error: no pages were captured.")
        return 1

    metadata = build_capture_metadata(book_id, result)
    write_json(metadata_path, metadata.to_dict())
    print(f"Saved metadata: {metadata_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
