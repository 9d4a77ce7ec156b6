"""
Turn detection for the BookReader viewer.

The viewer emits no reliable "page changed" event, and some versions never
update the page number, so progress is judged from two snapshots: the page
number and a signature of the image tiles currently on screen.
"""

import re

from book_types import ViewerObservation, parse_int

FOOTER_TOTAL_RE = re.compile(r"(\d+)\s*of\s*(\d+)", re.IGNORECASE)
TITLE_SUFFIX_RE = re.compile(r"\s*:\s*Free Download.*$", re.IGNORECASE)


def has_advanced(previous, current):
    """Return True when the page number or the visible content changed."""
    return (
        current.page_number != previous.page_number
        or current.content_signature != previous.content_signature
    )


def parse_footer_total(text):
    """Parse the total page count out of footer text like '12 of 340'."""
    if not text:
        return None
    match = FOOTER_TOTAL_RE.search(" ".join(text.split()))
    if not match:
        return None
    total = int(match.group(2))
    return total if total > 0 else None


def clean_title(title):
    """Drop the download-page suffix archive.org appends to og:title."""
    if not title:
        return None
    cleaned = TITLE_SUFFIX_RE.sub("", " ".join(title.split()))
    return cleaned or None


def observation_from_state(raw):
    """Normalize the raw state dict read from the page context."""
    if not isinstance(raw, dict):
        raw = {}

    page_number = parse_int(raw.get("page"))
    # Some BookReader builds report a 0-based index for the first leaf.
    if page_number == 0:
        page_number = 1
    if page_number is not None and page_number < 0:
        page_number = None

    total_pages = parse_int(raw.get("total"))
    if total_pages is None or total_pages <= 0:
        total_pages = parse_footer_total(raw.get("footerText"))

    signature = raw.get("sig")
    title = raw.get("title")
    author = raw.get("authorMeta")
    return ViewerObservation(
        page_number=page_number,
        total_pages=total_pages,
        content_signature=signature if isinstance(signature, str) else "",
        title=(title.strip() or None) if isinstance(title, str) else None,
        author=(author.strip() or None) if isinstance(author, str) else None,
    )
