from __future__ import annotations

import json
import logging
import random
import re
import threading
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode, urljoin, urlsplit
from urllib.request import Request, urlopen

from bs4 import BeautifulSoup

from stadia_spider import models
from stadia_spider.parsers import capture_from_proto
from stadia_spider.proto import Proto, at
from stadia_spider.rpc.batch import decode_batch, encode_batch_form
from stadia_spider.rpc.session import GoogleCookies
from stadia_spider.rpc.throttle import Throttle

logger = logging.getLogger(__name__)

_WIZ_GLOBAL_DATA = re.compile(r"WIZ_global_data\s*=\s*(\{.*?\});?\s*$", re.DOTALL)
# JavaScript \xNN escapes, not preceded by an escaped backslash.
_JS_HEX_ESCAPE = re.compile(r"(?<!\\)((?:\\\\)*)\\x([0-9a-fA-F]{2})")


class TransportError(RuntimeError):
    """An HTTP call failed or its response cannot be matched to the request."""


class Client:
    ROOT = "https://stadia.google.com/"
    ALLOWED_ORIGINS = (
        "https://stadia.google.com",
        "https://lh3.googleusercontent.com",
    )
    RPC_PATH = "/_/CloudcastPortalFeWebUi/data/batchexecute"
    TOKEN_PAGE = "settings"
    HUMAN_LANGUAGE = "en"
    CAPTURES_PAGE_SIZE = 99

    HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        "Origin": "https://stadia.google.com",
    }
    FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=UTF-8"

    def __init__(
        self,
        google_id: str = "",
        cookies: Optional[GoogleCookies] = None,
        throttle: Optional[Throttle] = None,
        timeout_seconds: float = 20,
        offline: bool = False,
    ):
        self.google_id = google_id
        self.cookies = cookies or GoogleCookies()
        self.throttle = throttle or Throttle()
        self.timeout_seconds = timeout_seconds
        self.offline = offline
        self._tokens: Optional[Dict[str, Any]] = None
        self._tokens_lock = threading.Lock()

    def _check_allowed(self, url: str) -> None:
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        if origin not in self.ALLOWED_ORIGINS:
            # Google cookies must never be sent to any other host.
            raise TransportError(f"{url} is not in {', '.join(self.ALLOWED_ORIGINS)}")

    def fetch_http(self, path: str, body: Optional[bytes] = None) -> str:
        url = urljoin(self.ROOT, path)
        self._check_allowed(url)
        if self.offline:
            raise TransportError(f"offline; refusing to fetch {url}")

        method = "GET" if body is None else "POST"
        headers = dict(self.HEADERS)
        headers["Cookie"] = self.cookies.header()
        if body is not None:
            headers["Content-Type"] = self.FORM_CONTENT_TYPE

        logger.info("%s %s for Google user %s", method, url, self.google_id or "(unknown)")
        req = Request(url, data=body, headers=headers, method=method)

        self.throttle.wait()
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                status = getattr(resp, "status", 200)
                text = resp.read().decode("utf-8")
        except HTTPError as exc:
            raise TransportError(f"http status {exc.code} {exc.reason} for {url}") from exc
        except URLError as exc:
            raise TransportError(f"request to {url} failed: {exc.reason}") from exc

        if status != 200:
            raise TransportError(f"http status {status} for {url}")
        return text

    @staticmethod
    def parse_wiz_global_data(html: str) -> Dict[str, Any]:
        """Extract the WIZ_global_data object from a page's inline scripts."""
        soup = BeautifulSoup(html, "html.parser")
        for script in soup.find_all("script"):
            source = script.string or ""
            if "WIZ_global_data" not in source:
                continue
            match = _WIZ_GLOBAL_DATA.search(source)
            if not match:
                continue
            literal = _JS_HEX_ESCAPE.sub(r"\1\\u00\2", match.group(1))
            try:
                data = json.loads(literal)
            except json.JSONDecodeError as e:
                raise TransportError(f"unparsable WIZ_global_data: {e}") from e
            if isinstance(data, dict):
                return data
        raise TransportError("WIZ_global_data not found in page")

    def fetch_page(self, path: str) -> Dict[str, Any]:
        return self.parse_wiz_global_data(self.fetch_http(path))

    def rpc_tokens(self) -> Dict[str, Any]:
        """The anti-forgery token, backend release and session id, fetched once."""
        with self._tokens_lock:
            if self._tokens is None:
                wiz = self.fetch_page(self.TOKEN_PAGE)
                self._tokens = {
                    "at": wiz.get("SNlM0e"),
                    "bl": wiz.get("cfb2h"),
                    "f.sid": wiz.get("FdrFJe"),
                }
                logger.debug("rpc tokens loaded (backend release %s)", self._tokens["bl"])
            return self._tokens

    def fetch_rpc_batch(self, pairs: Sequence[Tuple[str, Any]]) -> List[Proto]:
        """Send every (method id, args) pair in one request; results in call order."""
        pairs = list(pairs)
        if not pairs:
            return []

        tokens = self.rpc_tokens()
        method_ids = list(dict.fromkeys(method_id for method_id, _ in pairs))
        query = urlencode({
            "rpcids": ",".join(method_ids),
            "f.sid": tokens["f.sid"] or "",
            "bl": tokens["bl"] or "",
            "hl": self.HUMAN_LANGUAGE,
            "_reqid": str(random.randint(100000, 999999)),
            "rt": "c",
        })
        body = encode_batch_form(pairs, tokens["at"])
        text = self.fetch_http(f"{self.RPC_PATH}?{query}", body)

        results = decode_batch(text)
        if len(results) != len(pairs):
            raise TransportError(
                f"expected {len(pairs)} responses for {','.join(method_ids)} but got {len(results)}"
            )
        return results

    def fetch_rpc(self, method_id: str, args: Any = None) -> Proto:
        return self.fetch_rpc_batch([(method_id, args)])[0]

    def fetch_captures(self, page_token: Optional[str] = None) -> Iterator[models.Capture]:
        """Yield the signed-in user's captures, following page tokens."""
        while True:
            logger.debug("Fetching captures with page token %s", page_token)
            data = self.fetch_rpc("CmnEcf", [[self.CAPTURES_PAGE_SIZE, page_token]])
            page = [proto for proto in at(data, 0) or [] if isinstance(proto, list)]
            page_token = at(data, 1)
            logger.debug("Got page of %s captures and next page token %s", len(page), page_token)

            for proto in page:
                yield capture_from_proto(proto)

            if len(page) < self.CAPTURES_PAGE_SIZE or not page_token:
                return
