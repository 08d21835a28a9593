# stadia_spider/rpc/session.py
"""
Google session cookies and where they come from.

The client only needs the SID/SSID/HSID cookies of a signed-in Google
account. They can be passed directly as a cookie string, or read from a
Playwright storage-state file saved by `login_interactively`.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional

from playwright.sync_api import sync_playwright

logger = logging.getLogger(__name__)

COOKIE_NAMES = ("SID", "SSID", "HSID")
COOKIE_DOMAIN = ".google.com"
LOGIN_URL = "https://stadia.google.com/home"


@dataclass(frozen=True)
class GoogleCookies:
    sid: str = ""
    ssid: str = ""
    hsid: str = ""

    @classmethod
    def from_string(cls, cookie_string: str) -> "GoogleCookies":
        """Parse `SID=..;SSID=..;HSID=..`; missing cookies become empty."""
        cookies = {}
        for part in re.split(r";[; ]*", cookie_string or ""):
            name, sep, value = part.strip().partition("=")
            if sep:
                cookies[name] = value
        return cls(cookies.get("SID", ""), cookies.get("SSID", ""), cookies.get("HSID", ""))

    @property
    def complete(self) -> bool:
        return bool(self.sid and self.ssid and self.hsid)

    def header(self) -> str:
        return f"SID={self.sid}; SSID={self.ssid}; HSID={self.hsid};"


@dataclass(frozen=True)
class GoogleSession:
    google_id: str
    cookies: GoogleCookies
    source: Optional[str] = None


def _storage_state_files(path: str) -> List[str]:
    if os.path.isdir(path):
        return sorted(
            os.path.join(path, name) for name in os.listdir(path) if name.endswith(".json")
        )
    if os.path.exists(path):
        return [path]
    return []


def discover_sessions(storage_state_path: str, google_id: str = "") -> List[GoogleSession]:
    """
    Return a session for every storage-state file carrying all three Google
    auth cookies. `storage_state_path` may be one file or a directory of them.
    """
    sessions = []
    for path in _storage_state_files(storage_state_path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("could not read storage state %s: %s", path, e)
            continue

        found = {
            cookie.get("name"): cookie.get("value", "")
            for cookie in state.get("cookies", [])
            if cookie.get("domain") == COOKIE_DOMAIN and cookie.get("name") in COOKIE_NAMES
        }
        if len(found) < len(COOKIE_NAMES):
            logger.debug("%s does not have Google authentication cookies.", path)
            continue

        cookies = GoogleCookies(found["SID"], found["SSID"], found["HSID"])
        sessions.append(GoogleSession(google_id=google_id, cookies=cookies, source=path))

    logger.debug("Discovered %s session(s) in %s", len(sessions), storage_state_path)
    return sessions


def login_interactively(storage_state_path: str, url: str = LOGIN_URL) -> str:
    """
    Open a visible browser so the user can sign in, then save its storage
    state (cookies included) to `storage_state_path`.
    """
    directory = os.path.dirname(storage_state_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    playwright = sync_playwright().start()
    try:
        browser = playwright.chromium.launch(headless=False)
        kwargs = {}
        if os.path.exists(storage_state_path):
            kwargs["storage_state"] = storage_state_path
        context = browser.new_context(**kwargs)
        page = context.new_page()
        page.goto(url)
        input("Sign in to your Google account in the browser window, then press Enter here...")
        try:
            context.storage_state(path=storage_state_path)
        except Exception as e:
            raise RuntimeError(f"Failed to save storage state to {storage_state_path}: {e}")
        browser.close()
    finally:
        playwright.stop()

    logger.info("Saved browser session to %s", storage_state_path)
    return storage_state_path
