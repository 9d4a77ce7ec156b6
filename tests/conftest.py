"""Pytest fixtures and in-memory fakes for the viewer and the OCR model."""

import base64

import pytest

from book_types import ViewerObservation


class FakeViewer:
    """Scripted stand-in for BookReaderViewer.

    ``spreads`` is a list of (page_number, signature, image_bytes). Only the
    native next call moves forward; the other strategies are recorded no-ops.
    ``stable_errors`` maps a wait_until_stable call number to the exception it
    raises, and ``unreadable_observations`` lists observe call numbers that
    return None, as a detached frame does.
    """

    def __init__(
        self,
        spreads,
        total=None,
        interrupt_on_capture=None,
        locate_error=None,
        stable_errors=None,
        unreadable_observations=(),
    ):
        self.spreads = spreads
        self.total = total
        self.position = 0
        self.interrupt_on_capture = interrupt_on_capture
        self.locate_error = locate_error
        self.stable_errors = stable_errors or {}
        self.unreadable_observations = set(unreadable_observations)
        self.stable_calls = 0
        self.observe_calls = 0
        self.calls = []
        self.capture_calls = 0
        self.borrow_calls = 0
        self.jumps = []

    def locate_reader(self):
        if self.locate_error:
            raise self.locate_error

    def observe(self):
        self.observe_calls += 1
        if self.observe_calls in self.unreadable_observations:
            return None
        page, signature, _ = self.spreads[self.position]
        return ViewerObservation(page_number=page, total_pages=self.total, content_signature=signature)

    def wait_until_stable(self):
        self.stable_calls += 1
        error = self.stable_errors.get(self.stable_calls)
        if error:
            raise error

    def invoke_native_next(self):
        self.calls.append("native-next")
        if self.position < len(self.spreads) - 1:
            self.position += 1

    def click_next_control(self):
        self.calls.append("next-control")

    def press_next_key(self):
        self.calls.append("arrow-key")

    def attempt_borrow(self):
        self.borrow_calls += 1

    def jump_to_page(self, page_number):
        self.jumps.append(page_number)
        return True

    def capture_spread(self):
        self.capture_calls += 1
        if self.interrupt_on_capture == self.capture_calls:
            raise KeyboardInterrupt
        return self.spreads[self.position][2]


class FakeRecognizer:
    """Return scripted responses in order; exceptions in the script are raised."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def recognize(self, image_data_url, *, instructions, temperature):
        self.calls.append({"instructions": instructions, "temperature": temperature})
        response = self.responses.pop(0) if self.responses else ""
        if isinstance(response, Exception):
            raise response
        return response


class RecognizerByImage:
    """Answer per image content; shared across worker threads."""

    def __init__(self, answers, default="Page text."):
        self.answers = answers
        self.default = default

    def recognize(self, image_data_url, *, instructions, temperature):
        raw = base64.b64decode(image_data_url.split("base64,", 1)[1])
        return self.answers.get(raw, self.default)


@pytest.fixture
def delays():
    """Collect requested backoff delays instead of sleeping."""
    return []


@pytest.fixture
def isolated_env(monkeypatch, tmp_path):
    """Run a CLI in an empty directory with no book/OCR environment set."""
    for name in (
        "BOOK_ID",
        "IA_ID",
        "ASIN",
        "IA_URL",
        "OPENAI_API_KEY",
        "OCR_MODEL",
        "OCR_CONCURRENCY",
        "OCR_MAX_RETRIES",
        "OCR_BACKOFF_BASE_MS",
        "OCR_BACKOFF_MAX_MS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path
