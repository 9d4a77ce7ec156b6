"""Tests for the capture state machine, driven by a scripted viewer."""

import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from conftest import FakeViewer
from env_settings import CaptureSettings
from extract import (
    CaptureResult,
    CaptureStateMachine,
    build_capture_metadata,
    capture_filename,
    clear_previous_capture,
    sanitize_slug,
)
from transcribe import discover_page_images


def run_capture(viewer, tmp_path, **settings):
    pages_dir = tmp_path / "pages"
    pages_dir.mkdir()
    machine = CaptureStateMachine(viewer, pages_dir, CaptureSettings(**settings))
    return machine.run(), pages_dir


def test_indices_are_gap_free_and_files_exist(tmp_path):
    viewer = FakeViewer(
        [(1, "a", b"one"), (3, "b", b"two"), (5, "c", b"three")],
        total=None,
    )
    result, pages_dir = run_capture(viewer, tmp_path, max_pages=3)

    assert result.stop_reason == "page-limit"
    assert [p.index for p in result.pages] == [0, 1, 2]
    assert [p.page for p in result.pages] == [1, 3, 5]
    for page in result.pages:
        assert (tmp_path / page.screenshot).read_bytes()
    assert sorted(path.name for path in pages_dir.iterdir()) == [
        "00-01.png",
        "01-03.png",
        "02-05.png",
    ]


def test_duplicate_capture_triggers_exactly_one_recapture(tmp_path):
    """A spread identical to the previous one forces one extra turn and recapture."""
    viewer = FakeViewer(
        [(1, "a", b"same"), (2, "b", b"same"), (3, "c", b"fresh")],
        total=None,
    )
    result, _ = run_capture(viewer, tmp_path, max_pages=2)

    assert viewer.capture_calls == 3
    assert result.recaptures == 1
    assert [p.page for p in result.pages] == [1, 3]
    assert (tmp_path / result.pages[1].screenshot).read_bytes() == b"fresh"


def test_duplicate_recapture_is_kept_even_if_still_identical(tmp_path):
    viewer = FakeViewer([(1, "a", b"same"), (2, "b", b"same")], total=None)
    result, _ = run_capture(viewer, tmp_path, max_pages=2)

    assert viewer.capture_calls == 3
    assert result.recaptures == 1
    assert len(result.pages) == 2


def test_stagnation_stops_after_bounded_attempts(tmp_path):
    viewer = FakeViewer([(1, "a", b"1"), (2, "b", b"2"), (3, "c", b"3")], total=None)
    result, _ = run_capture(viewer, tmp_path, max_retries=10)

    assert result.stop_reason == "stagnation"
    assert [p.page for p in result.pages] == [1, 2, 3]
    # Two successful turns, then ten full strategy chains that change nothing.
    assert viewer.calls.count("native-next") == 2 + 10
    assert viewer.calls.count("next-control") == 10
    assert viewer.calls.count("arrow-key") == 10
    assert viewer.borrow_calls == 9
    assert result.total_pages == 3


def test_fallback_strategies_run_in_order(tmp_path):
    viewer = FakeViewer([(1, "a", b"1")], total=None)
    run_capture(viewer, tmp_path, max_retries=1)

    assert viewer.calls == ["native-next", "next-control", "arrow-key"]
    assert viewer.borrow_calls == 0


def test_stops_at_reported_total(tmp_path):
    viewer = FakeViewer(
        [(1, "a", b"1"), (3, "b", b"2"), (5, "c", b"3"), (7, "d", b"4")],
        total=5,
    )
    result, _ = run_capture(viewer, tmp_path)

    assert result.stop_reason == "reported-total"
    assert [p.page for p in result.pages] == [1, 3, 5]
    assert all(p.total == 5 for p in result.pages)
    assert result.total_pages == 5


def test_page_limit_caps_reported_total(tmp_path):
    viewer = FakeViewer([(n, str(n), str(n).encode()) for n in range(1, 11)], total=10)
    result, _ = run_capture(viewer, tmp_path, max_pages=4)

    assert result.stop_reason == "page-limit"
    assert len(result.pages) == 4


def test_missing_page_number_falls_back_to_position(tmp_path):
    viewer = FakeViewer([(None, "a", b"1"), (None, "b", b"2")], total=None)
    result, _ = run_capture(viewer, tmp_path, max_pages=2)

    assert [p.page for p in result.pages] == [1, 2]


def test_interrupt_keeps_completed_pages(tmp_path):
    viewer = FakeViewer(
        [(1, "a", b"1"), (2, "b", b"2"), (3, "c", b"3")],
        total=None,
        interrupt_on_capture=2,
    )
    result, pages_dir = run_capture(viewer, tmp_path)

    assert result.stop_reason == "interrupted"
    assert len(result.pages) == 1
    assert not list(pages_dir.glob("*.tmp"))
    assert [path.name for path in pages_dir.iterdir()] == ["0000-0001.png"]


def test_reader_timeout_propagates(tmp_path):
    viewer = FakeViewer([(1, "a", b"1")], locate_error=TimeoutError("reader not found"))
    with pytest.raises(TimeoutError):
        run_capture(viewer, tmp_path)
    assert viewer.capture_calls == 0


def test_positions_at_start_page_unless_resuming(tmp_path):
    jump_dir = tmp_path / "jump"
    jump_dir.mkdir()
    jumping = FakeViewer([(1, "a", b"1")], total=1)
    run_capture(jumping, jump_dir, start_page=5)
    assert jumping.jumps == [5]

    resume_dir = tmp_path / "resume"
    resume_dir.mkdir()
    resuming = FakeViewer([(1, "a", b"1")], total=1)
    run_capture(resuming, resume_dir, resume=True)
    assert resuming.jumps == []


def test_capture_filename_and_slug():
    assert capture_filename(3, 12, 4) == "0003-0012.png"
    assert sanitize_slug("my book/ed 2") == "my-book-ed-2"
    assert sanitize_slug("///") == "book"


def test_build_capture_metadata_spans_every_page():
    result = CaptureResult(pages=[], total_pages=42, stop_reason="stagnation", title=None)
    metadata = build_capture_metadata("mybook", result)

    assert metadata.title == "mybook"
    assert metadata.authors == ["Unknown"]
    assert [(entry.title, entry.page) for entry in metadata.toc] == [("mybook", 1), ("End", None)]
    payload = metadata.to_dict()
    assert payload["meta"] == {"asin": "mybook", "title": "mybook", "authorList": ["Unknown"]}


def test_unreadable_frame_is_not_a_page_turn(tmp_path):
    """A state read that fails right after a turn attempt must not count as progress."""
    viewer = FakeViewer([(7, "tiles-7", b"7")], total=None, unreadable_observations={3})
    result, _ = run_capture(viewer, tmp_path, max_retries=1)

    assert result.stop_reason == "stagnation"
    assert len(result.pages) == 1
    assert viewer.capture_calls == 1


def test_unreadable_frame_keeps_last_observation(tmp_path):
    viewer = FakeViewer([(4, "a", b"4"), (5, "b", b"5")], total=None, unreadable_observations={4})
    result, _ = run_capture(viewer, tmp_path, max_pages=2)

    # The read before the second capture failed, so the confirmed turn's page is used.
    assert [p.page for p in result.pages] == [4, 5]


def test_strategy_timeout_falls_through_to_next_strategy(tmp_path):
    viewer = FakeViewer(
        [(1, "a", b"1"), (2, "b", b"2"), (3, "c", b"3")],
        total=None,
        stable_errors={2: PlaywrightTimeoutError("Timeout 60000ms exceeded.")},
    )
    result, _ = run_capture(viewer, tmp_path, max_pages=3)

    assert result.stop_reason == "page-limit"
    assert [p.page for p in result.pages] == [1, 2, 3]
    assert viewer.calls[:2] == ["native-next", "next-control"]


def test_browser_error_outside_advance_stops_with_result(tmp_path):
    viewer = FakeViewer(
        [(1, "a", b"1"), (2, "b", b"2")],
        total=None,
        stable_errors={3: PlaywrightTimeoutError("Timeout 60000ms exceeded.")},
    )
    result, pages_dir = run_capture(viewer, tmp_path)

    assert result.stop_reason == "error"
    assert len(result.pages) == 1
    assert result.total_pages == 1
    assert (pages_dir / "0000-0001.png").exists()


def test_recapture_replaces_previous_run(tmp_path):
    book_dir = tmp_path / "book"
    pages_dir = book_dir / "pages"
    pages_dir.mkdir(parents=True)
    spreads = [(1, "a", b"1"), (2, "b", b"2"), (3, "c", b"3")]

    # No reported total: provisional cap 9999, four-digit names.
    CaptureStateMachine(FakeViewer(spreads), pages_dir, CaptureSettings()).run()
    (book_dir / "content.json").write_text("[]", encoding="utf-8")
    (book_dir / "metadata.json").write_text("{}", encoding="utf-8")

    assert clear_previous_capture(book_dir) == 5
    CaptureStateMachine(FakeViewer(spreads, total=300), pages_dir, CaptureSettings()).run()

    images = discover_page_images(pages_dir)
    assert [(image.index, image.page) for image in images] == [(0, 1), (1, 2), (2, 3)]
    assert [image.path.name for image in images] == ["000-001.png", "001-002.png", "002-003.png"]
    assert not (book_dir / "content.json").exists()
    assert not (book_dir / "metadata.json").exists()


def test_clear_previous_capture_without_earlier_run(tmp_path):
    assert clear_previous_capture(tmp_path / "never-captured") == 0
