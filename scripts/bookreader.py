"""
Playwright helpers for the Internet Archive BookReader.

Everything that touches the live browser lives here: login, borrowing,
locating the reader (which may sit inside an embedded frame), reading its
state, turning pages, and screenshotting the visible spread. The capture
state machine in extract.py only talks to BookReaderViewer.
"""

import time
from urllib.parse import urlparse

from reader_state import observation_from_state

READER_SELECTOR = "#BookReader, .BRbook, #BRcontainer"
SPINNER_SELECTORS = (
    "#BookReader .BRloading",
    "#BookReader .loading",
    "#BookReader .spinner",
    "#BookReader .BRspinner",
    ".BRbook .BRloading",
    ".BRbook .loading",
    ".BRbook .spinner",
    ".BRbook .BRspinner",
)
CAPTURE_TARGET_SELECTORS = (
    "#BookReader .BRpageview",
    "#BookReader .BRtwoPageView",
    "#BookReader .BRtwopage",
    "#BookReader .BRdoublepage",
    "#BookReader .BRpageimage",
    "#BookReader canvas",
    ".BRbook .BRpageview",
    ".BRbook .BRtwoPageView",
    ".BRbook .BRdoublepage",
    ".BRbook .BRpageimage",
    ".BRbook canvas",
    "#BookReader",
)
NEXT_CONTROL_SELECTORS = (
    "#BRnavnext",
    ".BRnext",
    ".brnext",
    ".bookreader-paged .BRnext",
    'button[title="Next"]',
    'a[title="Next"]',
    '[aria-label="Next"]',
)
BORROW_SELECTORS = (
    "role=button[name=/^borrow/i]",
    "role=link[name=/^borrow/i]",
    'button:has-text("Borrow")',
    'a:has-text("Borrow")',
    'button:has-text("Borrow for")',
    'button:has-text("Borrow This Book")',
    r"text=/^Borrow( for \d+ (hour|hours|days))?$/i",
)
READ_ONLINE_SELECTORS = (
    'a:has-text("Read online")',
    'button:has-text("Read online")',
)
LOGGED_IN_SELECTOR = (
    'a[href="/account.php"], a[href*="/logout"], #navbar .account, '
    '#navright .tools a[aria-label*="account" i]'
)
LOGIN_URLS = (
    "https://archive.org/account/login.php",
    "https://archive.org/account/login",
)
LOGIN_LINK_SELECTOR = ", ".join(
    (
        'a[href*="/account/login"]',
        'a:has-text("Sign In")',
        'a:has-text("Log In")',
        'button:has-text("Sign In")',
        'button:has-text("Log In")',
    )
)
EMAIL_INPUT_SELECTOR = ", ".join(
    (
        'input[name="username"]',
        "input#username",
        'input[name="email"]',
        "input#email",
        "input#input-email",
        'input[name="login"]',
        'input[type="email"]',
    )
)
PASSWORD_INPUT_SELECTOR = ", ".join(
    ('input[name="password"]', "input#password", 'input[type="password"]')
)
SUBMIT_SELECTOR = ", ".join(
    (
        'button[type="submit"]',
        'input[type="submit"]',
        'button:has-text("Sign in")',
        'button:has-text("Log in")',
        'input[value*="Sign in" i]',
        'input[value*="Log in" i]',
    )
)
CONTINUE_SELECTOR = (
    'button:has-text("Next"), button:has-text("Continue"), input[type="submit"]'
)
VIEWPORT = {"width": 1366, "height": 900}

BR_STATE_SCRIPT = """
() => {
    const w = window;
    const br = w.br || (w.BookReader && (w.BookReader.instances?.[0] || w.BookReader.instance));
    const pageNum = br?.getPageNum?.() ?? br?.getPage?.() ?? br?.pageNum ?? br?.page;
    const total = br?.getNumLeafs?.() ?? br?.leafMap?.length ?? br?.numLeafs ?? br?.pages?.length;
    const title = document.querySelector('meta[property="og:title"]')?.content || document.title;
    const authorMeta = document.querySelector('meta[name="creator"]')?.content || null;
    const container = document.querySelector('#BookReader, .BRbook, #BRcontainer');
    const srcs = container
        ? Array.from(container.querySelectorAll('img[src]'))
            .map((img) => img.currentSrc || img.src)
            .filter(Boolean)
        : [];
    const sig = srcs.slice(0, 12).join('|') + '|' + srcs.length;
    const footer = document.querySelector('.BRpageinfo,.BRpagenum,#BRpagenum,.BRinfo,.brpageinfo');
    return {
        page: pageNum ?? null,
        total: total ?? null,
        title,
        authorMeta,
        sig,
        footerText: footer?.textContent || '',
    };
}
"""

WAIT_FOR_IMAGES_SCRIPT = """
async ({ selector, timeoutMs }) => {
    const container = document.querySelector(selector);
    if (!container) return 0;
    const pending = Array.from(container.querySelectorAll('img')).filter((img) => !img.complete);
    const loaded = Promise.all(
        pending.map((img) => new Promise((resolve) => {
            img.addEventListener('load', () => resolve(), { once: true });
            img.addEventListener('error', () => resolve(), { once: true });
        }))
    );
    const timeout = new Promise((resolve) => setTimeout(resolve, timeoutMs));
    await Promise.race([loaded, timeout]);
    return pending.length;
}
"""

NATIVE_NEXT_SCRIPT = """
() => {
    const w = window;
    const br = w.br || (w.BookReader && (w.BookReader.instances?.[0] || w.BookReader.instance));
    if (!br || typeof br.next !== 'function') return false;
    br.next();
    return true;
}
"""

JUMP_TO_LEAF_SCRIPT = """
(leaf) => {
    const w = window;
    const br = w.br || (w.BookReader && (w.BookReader.instances?.[0] || w.BookReader.instance));
    if (!br) return false;
    if (leaf <= 0 && br.first) br.first();
    else if (br.jumpTo) br.jumpTo(leaf);
    else return false;
    return true;
}
"""


def parse_book_id_from_url(url):
    """Return the item identifier from an archive.org /details/<id> URL."""
    if not url:
        return None
    try:
        parts = [part for part in urlparse(url).path.split("/") if part]
    except ValueError:
        return None
    if "details" not in parts:
        return None
    idx = parts.index("details")
    return parts[idx + 1] if idx + 1 < len(parts) else None


def normalize_reader_url(raw_url, book_id, start_page=0):
    """Force the 2-up theater view, optionally pinned to a start page."""
    path = f"/details/{book_id}"
    if start_page and start_page > 0:
        path += f"/page/n{start_page}"
    path += "/mode/2up"

    try:
        parsed = urlparse(raw_url) if raw_url else None
    except ValueError:
        parsed = None
    host = parsed.netloc if parsed and parsed.netloc else "archive.org"
    scheme = parsed.scheme if parsed and parsed.scheme else "https"
    return f"{scheme}://{host}{path}?view=theater"


def is_locator_visible(locator):
    """Return True when the first match of a locator exists and is visible."""
    try:
        return locator.count() > 0 and locator.is_visible()
    except Exception:
        return False


def attempt_borrow(scope):
    """Best-effort: click a Borrow control on the page or reader frame."""
    for selector in BORROW_SELECTORS:
        try:
            button = scope.locator(selector).first
            if not is_locator_visible(button):
                continue
            print(f"Info: clicking borrow control ({selector}).")
            button.click(timeout=2000)
            time.sleep(1.2)
            return True
        except Exception:
            continue
    return False


def click_read_online(page):
    """Best-effort: click a 'Read online' link on the details page."""
    for selector in READ_ONLINE_SELECTORS:
        try:
            button = page.locator(selector).first
            if not is_locator_visible(button):
                continue
            button.click(timeout=3000)
            page.wait_for_timeout(1500)
            return True
        except Exception:
            continue
    return False


def ensure_theater_mode(page):
    """Reload in theater + 2up mode when the reader opened in another view."""
    try:
        parsed = urlparse(page.url)
    except ValueError:
        return False
    book_id = parse_book_id_from_url(page.url)
    if not book_id:
        return False
    if "view=theater" in (parsed.query or "") and "/mode/2up" in parsed.path:
        return False
    page.goto(normalize_reader_url(page.url, book_id), timeout=60_000)
    page.wait_for_timeout(1000)
    return True


def find_reader_frame(page, timeout_ms=60_000, poll_ms=500):
    """Return the frame hosting the reader, searching every child frame."""
    deadline = time.time() + (timeout_ms / 1000)
    while True:
        for frame in page.frames:
            try:
                if frame.locator(READER_SELECTOR).count() > 0:
                    return frame
            except Exception:
                continue
        if time.time() >= deadline:
            break
        page.wait_for_timeout(poll_ms)
    raise TimeoutError(
        f"BookReader view not found in page or child frames within {timeout_ms} ms."
    )


def is_logged_in(page):
    """Return True when archive.org shows account controls."""
    return is_locator_visible(page.locator(LOGGED_IN_SELECTOR).first)


def go_to_login(page):
    """Open the archive.org login form, trying direct URLs then links."""
    for url in LOGIN_URLS:
        try:
            page.goto(url, timeout=30_000)
            page.wait_for_timeout(500)
            if "/account/login" in page.url:
                return True
        except Exception:
            continue

    try:
        page.locator(LOGIN_LINK_SELECTOR).first.click(timeout=10_000)
        page.wait_for_timeout(500)
        return True
    except Exception:
        return False


def fill_login(page, email, password):
    """Fill and submit the login form; raises when the form never appears."""
    email_input = page.locator(EMAIL_INPUT_SELECTOR).first
    email_input.wait_for(state="visible", timeout=20_000)
    email_input.fill(email)

    # Two-step forms only show the password after a Continue click.
    if not is_locator_visible(page.locator(PASSWORD_INPUT_SELECTOR).first):
        try:
            page.locator(CONTINUE_SELECTOR).first.click(timeout=5000)
            page.wait_for_timeout(500)
        except Exception:
            pass

    page.locator(PASSWORD_INPUT_SELECTOR).first.fill(password)
    try:
        page.locator(SUBMIT_SELECTOR).first.click(timeout=10_000)
    except Exception:
        page.keyboard.press("Enter")
    try:
        page.wait_for_load_state("networkidle", timeout=30_000)
    except Exception:
        pass


def launch_reader_context(playwright, data_dir, headless=False):
    """Open the persistent browser profile that keeps the archive.org session."""
    return playwright.chromium.launch_persistent_context(
        user_data_dir=str(data_dir),
        headless=headless,
        device_scale_factor=2,
        viewport=VIEWPORT,
    )


def ensure_logged_in(playwright, base_url, email, password, data_dir, headless=False):
    """Log in once through the persistent profile; a no-op when already signed in."""
    context = launch_reader_context(playwright, data_dir, headless=headless)
    try:
        page = context.new_page()
        try:
            page.goto(base_url, timeout=60_000)
        except Exception:
            print(f"Warning: could not open {base_url} before login check.")

        if is_logged_in(page):
            print("Info: existing archive.org session found.")
            return True

        print("Info: signing in to archive.org...")
        go_to_login(page)
        try:
            fill_login(page, email, password)
        except Exception:
            try:
                page.goto(LOGIN_URLS[-1], timeout=30_000)
                page.wait_for_timeout(500)
                fill_login(page, email, password)
            except Exception as exc:
                print(f"Warning: login form failed ({exc}); continuing with current session.")
                return False

        logged_in = is_logged_in(page)
        if not logged_in:
            print("Warning: login could not be confirmed; continuing with current session.")
        return logged_in
    finally:
        context.close()


def open_reader(page, book_id, url, reader_timeout_ms=60_000, start_page=0):
    """Borrow and open the book, returning the frame that hosts the reader."""
    page.goto(normalize_reader_url(url, book_id, start_page), timeout=60_000)
    page.wait_for_timeout(1000)

    if attempt_borrow(page):
        print("Info: borrow requested on the details page.")
    if click_read_online(page):
        print("Info: opened the online reader.")
    try:
        ensure_theater_mode(page)
    except Exception:
        print("Warning: could not switch the reader to theater mode.")

    try:
        frame = find_reader_frame(page, timeout_ms=reader_timeout_ms)
    except TimeoutError:
        print("Warning: reader not found on the details page; trying the stream view.")
        page.goto(f"https://archive.org/stream/{book_id}?ui=embed#mode/1up", timeout=60_000)
        page.wait_for_timeout(1000)
        frame = find_reader_frame(page, timeout_ms=reader_timeout_ms)

    # The borrow overlay sometimes renders inside the reader itself.
    if attempt_borrow(frame):
        print("Info: borrow requested inside the reader.")
    return frame


class BookReaderViewer:
    """Automation capability the capture state machine drives."""

    def __init__(self, page, frame, settings):
        self.page = page
        self.frame = frame
        self.settings = settings

    def locate_reader(self):
        """Re-resolve the reader frame; raises TimeoutError when it is gone."""
        self.frame = find_reader_frame(self.page, timeout_ms=self.settings.reader_timeout_ms)
        return self.frame

    def read_state(self):
        """Evaluate the raw BookReader state inside the reader frame; None when unreadable."""
        try:
            return self.frame.evaluate(BR_STATE_SCRIPT)
        except Exception as exc:
            print(f"Warning: could not read BookReader state ({exc}).")
            return None

    def observe(self):
        """Return a ViewerObservation of what is on screen, or None if the frame cannot be read."""
        state = self.read_state()
        if state is None:
            return None
        return observation_from_state(state)

    def wait_for_spinner(self):
        """Poll until no loading indicator is visible; a stale spinner is not fatal."""
        spinner = self.frame.locator(", ".join(SPINNER_SELECTORS)).first
        deadline = time.time() + (self.settings.spinner_timeout_ms / 1000)
        while time.time() < deadline:
            if not is_locator_visible(spinner):
                return True
            self.page.wait_for_timeout(250)
        print("Warning: loading indicator still visible; continuing anyway.")
        return False

    def wait_for_images(self):
        """Wait for images inside the reader to finish loading (bounded)."""
        try:
            self.frame.evaluate(
                WAIT_FOR_IMAGES_SCRIPT,
                {
                    "selector": READER_SELECTOR,
                    "timeoutMs": self.settings.spinner_timeout_ms,
                },
            )
            return True
        except Exception:
            return False

    def wait_until_stable(self):
        """Run the spinner, image, stability-window, and settle-delay gates in order."""
        container = self.frame.locator(READER_SELECTOR).first
        container.wait_for(state="visible", timeout=self.settings.reader_timeout_ms)
        try:
            self.page.wait_for_load_state("domcontentloaded")
        except Exception:
            pass
        self.wait_for_spinner()
        self.wait_for_images()
        self.page.wait_for_timeout(self.settings.tile_stable_ms)
        self.page.wait_for_timeout(self.settings.page_delay_ms)

    def invoke_native_next(self):
        """Advance with the viewer's own br.next()."""
        try:
            return bool(self.frame.evaluate(NATIVE_NEXT_SCRIPT))
        except Exception:
            return False

    def click_next_control(self):
        """Click the first visible next-page control."""
        for selector in NEXT_CONTROL_SELECTORS:
            try:
                control = self.frame.locator(selector).first
                if not is_locator_visible(control):
                    continue
                control.click(timeout=1200)
                return True
            except Exception:
                continue
        return False

    def press_next_key(self):
        """Send a right-arrow key press to the reader."""
        try:
            self.page.keyboard.press("ArrowRight")
            return True
        except Exception:
            return False

    def attempt_borrow(self):
        """Retry borrowing in case the viewer re-locked the book."""
        return attempt_borrow(self.frame) or attempt_borrow(self.page)

    def jump_to_page(self, page_number):
        """Jump to a 1-based page so the viewer does not resume elsewhere."""
        leaf = max(0, page_number - 1)
        try:
            return bool(self.frame.evaluate(JUMP_TO_LEAF_SCRIPT, leaf))
        except Exception as exc:
            print(f"Warning: could not jump to page {page_number} ({exc}).")
            return False

    def capture_target(self):
        """Return the inner spread element, excluding reader chrome."""
        target = self.frame.locator(", ".join(CAPTURE_TARGET_SELECTORS)).first
        target.wait_for(state="visible", timeout=self.settings.reader_timeout_ms)
        return target

    def capture_spread(self):
        """Screenshot the visible spread and return the PNG bytes."""
        return self.capture_target().screenshot(type="png", scale="css")
