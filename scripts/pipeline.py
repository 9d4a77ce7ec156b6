"""
Run capture, transcription, and export for one book.

Each stage reads what the previous one wrote under out/<id>/, so a run can be
restarted at any stage boundary with --from-stage.

Usage:
    python scripts/pipeline.py --book-id mybook
    python scripts/pipeline.py --book-id mybook --from-stage export
"""

import argparse

from dotenv import load_dotenv

import export_markdown
import extract
import transcribe
from bookreader import parse_book_id_from_url
from env_settings import env_str, get_book_id

STAGES = ("capture", "transcribe", "export")


def stage_argv(stage, book_id, out_dir, url=None):
    """Build the argument list handed to one stage's main()."""
    if stage == "capture":
        argv = ["--book-id", book_id, "--out-dir", out_dir]
        if url:
            argv += ["--url", url]
        return argv
    return ["--book-id", extract.sanitize_slug(book_id), "--out-dir", out_dir]


def run_stages(book_id, out_dir, from_stage="capture", url=None, runners=None):
    """Run stages in order from from_stage; return the first non-zero exit code."""
    runners = runners or {
        "capture": extract.main,
        "transcribe": transcribe.main,
        "export": export_markdown.main,
    }
    for stage in STAGES[STAGES.index(from_stage):]:
        print(f"\n=== {stage} ===")
        code = runners[stage](stage_argv(stage, book_id, out_dir, url))
        if code:
            print(f"Error: {stage} stage exited with code {code}; stopping.")
            return code
    return 0


def main(argv=None):
    load_dotenv()

    parser = argparse.ArgumentParser(description="Capture, transcribe, and export a book")
    parser.add_argument("--book-id", default=get_book_id(), help="archive.org item id")
    parser.add_argument("--url", default=env_str("IA_URL"), help="archive.org details URL")
    parser.add_argument("--out-dir", default="out", help="Output root (default: out)")
    parser.add_argument(
        "--from-stage",
        choices=STAGES,
        default="capture",
        help="Stage to start from (default: capture)",
    )
    args = parser.parse_args(argv)

    book_id = args.book_id or parse_book_id_from_url(args.url)
    if not book_id:
        print("Error: BOOK_ID, IA_ID, or a resolvable IA_URL is required.")
        return 1

    return run_stages(book_id, args.out_dir, args.from_stage, args.url)


if __name__ == "__main__":
    raise SystemExit(main())
