# functions.py
"""
Contains the core relay functions for the eCourts case-status flow.
Is independent and importable by app.py or script.py.
"""

# region ------------------- Chapter 1: Imports -------------------

import base64
import copy
import difflib
import html
import json
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from dateutil import parser as dateparser
from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError

# endregion Imports


# region ------------------- Chapter 2: Constants -------------------

load_dotenv()

# Main eCourts portal (state -> district court links)
ECOURTS_MAIN_PORTAL_URL = "https://ecourts.gov.in/ecourts_home/index.php"
ECOURTS_BASE_DOMAIN = "https://ecourts.gov.in"
STATE_LINK_PATTERN = "?p=dist_court/"
STATE_CODE_REGEX = re.compile(r"\?p=dist_court/([a-z]+)", re.I)
DISTRICT_SELECT_NAME = "sateist"

# District court sites (<district>.dcourts.gov.in)
DISTRICT_COURT_HOST_SUFFIX = ".dcourts.gov.in"
CASE_SEARCH_PATH = "/case-status-search-by-petitioner-respondent/"
AJAX_PATH = "/wp-admin/admin-ajax.php"
CAPTCHA_PATH = "/?_siwp_captcha&id="
SCID_FIELD = "scid"
TOKEN_FIELD_PREFIX = "tok_"
LITIGANT_SEARCH_FIELDS = (
    "service_type",
    "est_code",
    "litigant_name",
    "reg_year",
    "case_status",
)

# High Court services
HC_BASE_URL = "https://hcservices.ecourts.gov.in/"
HC_QUERY_URL = HC_BASE_URL + "hcservices/cases_qry/index_qry.php"
HC_CAPTCHA_URL = HC_BASE_URL + "hcservices/securimage/securimage_show.php"
HC_CASE_FIELDS = (
    "captcha",
    "petres_name",
    "rgyear",
    "caseStatusSearchType",
    "f",
    "court_code",
    "state_code",
    "court_complex_code",
)

# Relay / transport configuration
SCRAPERAPI_KEY = os.getenv("SCRAPERAPI_KEY", "").strip()
SCRAPERAPI_ENDPOINT = os.getenv("SCRAPERAPI_ENDPOINT", "http://api.scraperapi.com/")
PROXY_URL = os.getenv("ECOURTS_PROXY_URL", "").strip()
VERIFY_TLS = os.getenv("ECOURTS_VERIFY_TLS", "1").strip().lower() not in ("0", "false", "no")
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60"))
BENCH_TIMEOUT = float(os.getenv("BENCH_TIMEOUT", "90"))
HC_CAPTCHA_TIMEOUT = float(os.getenv("HC_CAPTCHA_TIMEOUT", "45"))
MAX_REDIRECTS = 5

# Captcha decoding
CAPTCHA_SEARCH_WINDOW = 2000
IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)

# HTTP headers sent with page (navigation) requests
COMMON_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "User-Agent": USER_AGENT,
    "sec-ch-ua": '"Chromium";v="136", "Brave";v="136", "Not.A/Brand";v="99"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"Windows"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "same-origin",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
    "Sec-GPC": "1",
}

# HTTP headers sent with admin-ajax / index_qry POSTs (Origin, Referer, Cookie set per call)
AJAX_HEADERS = {
    "Accept": "application/json, text/javascript, */*; q=0.01",
    "Accept-Language": "en-US,en;q=0.7",
    "Connection": "keep-alive",
    "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-origin",
    "Sec-GPC": "1",
    "User-Agent": USER_AGENT,
    "X-Requested-With": "XMLHttpRequest",
    "sec-ch-ua": COMMON_HEADERS["sec-ch-ua"],
    "sec-ch-ua-mobile": COMMON_HEADERS["sec-ch-ua-mobile"],
    "sec-ch-ua-platform": COMMON_HEADERS["sec-ch-ua-platform"],
}

# HTTP headers sent with captcha image requests
IMAGE_HEADERS = {
    "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
    "Connection": "keep-alive",
    "Sec-Fetch-Dest": "image",
    "Sec-Fetch-Mode": "no-cors",
    "Sec-Fetch-Site": "same-origin",
    "Sec-GPC": "1",
    "User-Agent": USER_AGENT,
    "sec-ch-ua": COMMON_HEADERS["sec-ch-ua"],
    "sec-ch-ua-mobile": COMMON_HEADERS["sec-ch-ua-mobile"],
    "sec-ch-ua-platform": COMMON_HEADERS["sec-ch-ua-platform"],
}

# A logger system for printing errors
logger = logging.getLogger(__name__)
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

# endregion Constants


# region ------------------- Chapter 3: Errors -------------------


class ECourtsError(Exception):
    """Base error for a failed step. Carries the HTTP status the API should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(ECourtsError):
    """Missing or invalid caller-supplied field."""

    status_code = 400


class SessionStateError(ECourtsError):
    """A step was called before the session holds what it needs."""

    status_code = 401

    def __init__(self, message: str, missing: Optional[List[str]] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, details={"missing": missing} if missing else None)
        self.missing = list(missing or [])


class UpstreamRequestError(ECourtsError):
    """Network error, timeout or non-2xx answer from the portal or the relay."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        details = {k: v for k, v in (("status", status), ("code", code)) if v is not None}
        super().__init__(message, details=details or None)
        self.status = status
        self.code = code


class ScrapeError(ECourtsError):
    """Expected markup (hidden field, link, option) was not found."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message, details={"missing": missing} if missing else None)
        self.missing = list(missing or [])


class InvalidCaptchaImageError(ECourtsError):
    """Captcha response is not an image we can hand to the client."""


# endregion Errors


# region ------------------- Chapter 4: Cookie Helpers -------------------


def extract_cookies(set_cookie_headers: Optional[List[str]]) -> str:
    """Join the name=value part of every Set-Cookie header with '; '."""
    if not set_cookie_headers:
        return ""
    pairs = []
    for raw in set_cookie_headers:
        pair = (raw or "").split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


def parse_cookie_string(cookie_string: Optional[str]) -> Dict[str, str]:
    """
    Parse 'a=1; b=2' into an ordered dict.
    Later duplicates win, fragments without '=' are skipped.
    """
    jar: Dict[str, str] = {}
    if not cookie_string:
        return jar
    for fragment in cookie_string.split(";"):
        name, sep, value = fragment.strip().partition("=")
        name = name.strip()
        if not sep or not name:
            continue
        jar[name] = value.strip()
    return jar


def serialize_cookies(jar: Dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in jar.items())


def merge_cookies(existing: Optional[str], incoming: Optional[str]) -> str:
    """
    Overlay incoming cookies on existing ones.
    - incoming wins on a name collision
    - order is first-insertion order
    - empty incoming returns existing unchanged
    """
    if not incoming:
        return existing or ""
    jar = parse_cookie_string(existing)
    jar.update(parse_cookie_string(incoming))
    return serialize_cookies(jar)


def cookie_names(cookie_string: Optional[str]) -> List[str]:
    """Names only, for log lines."""
    return list(parse_cookie_string(cookie_string).keys())


# endregion Cookie Helpers


# region ------------------- Chapter 5: HTTP Relay -------------------


@dataclass
class RelayResponse:
    status: int
    headers: Dict[str, str]
    body: Any
    set_cookies: List[str] = field(default_factory=list)

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value or ""
        return ""

    @property
    def cookies(self) -> str:
        return extract_cookies(self.set_cookies)


def _set_cookie_list(resp: requests.Response) -> List[str]:
    """
    Raw Set-Cookie values of the response and its redirect history.
    requests folds repeated headers into one comma-joined string, so
    read them from the urllib3 response when it is there.
    """
    found: List[str] = []
    for r in list(getattr(resp, "history", None) or []) + [resp]:
        raw_headers = getattr(getattr(r, "raw", None), "headers", None)
        if raw_headers is not None and hasattr(raw_headers, "getlist"):
            found.extend(raw_headers.getlist("Set-Cookie"))
        else:
            found.extend(f"{c.name}={c.value}" for c in r.cookies)
    return found


def _decode_body(resp: requests.Response, response_kind: str) -> Any:
    if response_kind == "binary":
        return resp.content
    if response_kind == "json":
        try:
            return resp.json()
        except ValueError:
            logger.warning("Expected JSON but got %s; keeping text body.", resp.headers.get("Content-Type"))
            return resp.text
    return resp.text


class Transport:
    """Strategy for sending one outbound request. Picked once at startup."""

    name = "base"

    def request(
        self,
        method: str,
        target_url: str,
        data: Any = None,
        headers: Optional[Dict[str, str]] = None,
        response_kind: str = "text",
        timeout: float = REQUEST_TIMEOUT,
    ) -> RelayResponse:
        raise NotImplementedError

    def _send(self, method: str, url: str, label: str, response_kind: str, **kwargs) -> RelayResponse:
        try:
            resp = requests.request(method, url, **kwargs)
        except requests.Timeout as e:
            logger.error("%s %s timed out: %s", method, label, e)
            raise UpstreamRequestError(f"Request to {label} timed out", code="timeout") from e
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, label, e)
            raise UpstreamRequestError(f"Request to {label} failed: {e}", code=type(e).__name__) from e

        logger.info("%s %s -> %s", method, label, resp.status_code)
        if not 200 <= resp.status_code < 300:
            raise UpstreamRequestError(
                f"Upstream answered {resp.status_code} for {label}", status=resp.status_code
            )

        return RelayResponse(
            status=resp.status_code,
            headers=dict(resp.headers),
            body=_decode_body(resp, response_kind),
            set_cookies=_set_cookie_list(resp),
        )


class DirectTransport(Transport):
    """Talk to the portal directly, optionally through an outbound proxy."""

    name = "direct"

    def __init__(self, proxy_url: Optional[str] = None, verify: bool = True):
        self.proxies = {"http": proxy_url, "https": proxy_url} if proxy_url else None
        self.verify = verify

    def request(self, method, target_url, data=None, headers=None, response_kind="text", timeout=REQUEST_TIMEOUT):
        return self._send(
            method.upper(),
            target_url,
            target_url,
            response_kind,
            data=data,
            headers=headers or {},
            timeout=timeout,
            proxies=self.proxies,
            verify=self.verify,
            allow_redirects=True,
        )


class RelayTransport(Transport):
    """Send through ScraperAPI; it forwards headers/body and returns the origin response."""

    name = "relay"

    def __init__(self, api_key: str, endpoint: str = SCRAPERAPI_ENDPOINT):
        if not api_key:
            raise ValueError("RelayTransport needs an API key")
        self.api_key = api_key
        self.endpoint = endpoint

    def request(self, method, target_url, data=None, headers=None, response_kind="text", timeout=REQUEST_TIMEOUT):
        return self._send(
            method.upper(),
            self.endpoint,
            target_url,
            response_kind,
            params={"api_key": self.api_key, "url": target_url},
            data=data,
            headers=headers or {},
            timeout=timeout,
            allow_redirects=True,
        )


def build_transport(api_key: Optional[str] = None, proxy_url: Optional[str] = None) -> Transport:
    """Relay when a ScraperAPI key is configured, direct otherwise."""
    api_key = SCRAPERAPI_KEY if api_key is None else api_key
    if api_key:
        logger.info("Using ScraperAPI relay for outbound requests.")
        return RelayTransport(api_key)
    logger.warning("SCRAPERAPI_KEY is not set. Requests go directly to eCourts.")
    return DirectTransport(proxy_url=PROXY_URL if proxy_url is None else proxy_url, verify=VERIFY_TLS)


# endregion HTTP Relay


# region ------------------- Chapter 6: Page Scraping -------------------


def make_soup(html_text: str):
    """Convert raw HTML into a BS object.
    Prefer lxml when available; fallback to built-in parser.
    """
    try:
        return BeautifulSoup(html_text or "", "lxml")
    except Exception:
        return BeautifulSoup(html_text or "", "html.parser")


def extract_links(html_text: str, href_pattern: str, code_regex, base_url: str) -> List[Dict[str, str]]:
    """
    Anchors whose href contains href_pattern.
    - code comes from the first group of code_regex
    - href is resolved against base_url
    - the first anchor wins when a code repeats
    """
    soup = make_soup(html_text)
    regex = re.compile(code_regex, re.I) if isinstance(code_regex, str) else code_regex
    links: List[Dict[str, str]] = []
    seen = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        name = a.get_text(" ", strip=True)
        if href_pattern not in href or not name:
            continue
        m = regex.search(href)
        if not m or not m.group(1):
            continue
        code = m.group(1)
        if code in seen:
            continue
        seen.add(code)
        links.append({"name": name, "href": urljoin(base_url, href), "code": code})
    return links


def extract_select_options(html_text: str, select_name: str) -> List[Dict[str, str]]:
    """Options of <select name|id=select_name>, without empty or 'Please Select' entries."""
    soup = make_soup(html_text)
    sel = soup.find("select", {"name": select_name}) or soup.find("select", {"id": select_name})
    if not sel:
        return []
    opts = []
    for o in sel.find_all("option"):
        v = (o.get("value") or "").strip()
        t = (o.text or "").strip()
        if not v or not t or "please select" in t.lower():
            continue
        opts.append({"code": v, "name": t})
    return opts


@dataclass
class CaptchaToken:
    scid: str
    token_name: str
    token_value: str


def extract_hidden_fields(
    html_text: str, value_field: str = SCID_FIELD, prefix: str = TOKEN_FIELD_PREFIX
) -> CaptchaToken:
    """
    Read the scid input and the anti-automation token input.
    The token input name changes on every page load, only its prefix is stable.
    """
    soup = make_soup(html_text)

    scid = None
    scid_input = soup.find("input", {"name": value_field})
    if scid_input and scid_input.get("value"):
        scid = scid_input["value"].strip()

    token_name = token_value = None
    for inp in soup.find_all("input", {"type": "hidden"}):
        name = inp.get("name") or ""
        if name.startswith(prefix):
            token_name = name
            token_value = (inp.get("value") or "").strip()
            break

    missing = [
        label
        for label, value in ((value_field, scid), ("token name", token_name), ("token value", token_value))
        if not value
    ]
    if missing:
        raise ScrapeError(f"Could not extract {', '.join(missing)} from case search page.", missing=missing)
    return CaptchaToken(scid=scid, token_name=token_name, token_value=token_value)


def parse_bench_string(raw: Any) -> List[Dict[str, str]]:
    """'0~Select Bench#1~Allahabad High Court#' -> [{id, name}, ...]. Non-strings give []."""
    if not isinstance(raw, str):
        logger.error("parse_bench_string received non-string data: %r", type(raw))
        return []
    benches = []
    for chunk in raw.split("#"):
        if not chunk:
            continue
        bench_id, _, name = chunk.partition("~")
        bench_id = bench_id.strip()
        if not bench_id:
            continue
        benches.append({"id": bench_id, "name": name.strip()})
    return benches


def resolve_option(
    opts: List[Dict[str, str]], user_input: Any, code_key: str = "code", name_key: str = "name"
) -> Optional[Dict[str, str]]:
    """
    opts: list of dicts with a code and a name
    user_input: either a code or a name/substr
    Behavior:
        - exact code match
        - exact name match (case-ins)
        - unique substring match (case-ins)
        - difflib fuzzy match (best single result)
    """
    if user_input is None:
        return None
    s = str(user_input).strip()
    if not s:
        return None
    for o in opts:
        if o.get(code_key) == s:
            return o
    for o in opts:
        if (o.get(name_key) or "").lower() == s.lower():
            return o
    subs = [o for o in opts if s.lower() in (o.get(name_key) or "").lower()]
    if len(subs) == 1:
        return subs[0]
    if len(subs) > 1:
        logger.info("'%s' matches %d options; refusing to guess.", s, len(subs))
        return None
    names = [o.get(name_key) or "" for o in opts]
    best = difflib.get_close_matches(s, names, n=1, cutoff=0.6)
    if best:
        for o in opts:
            if o.get(name_key) == best[0]:
                return o
    return None


# endregion Page Scraping


# region ------------------- Chapter 7: Payload and Captcha Decoding -------------------


@dataclass
class Payload:
    """Upstream body: kind 'raw' (text we could not decode) or 'parsed' (JSON value)."""

    kind: str
    value: Any

    @classmethod
    def raw(cls, text: str) -> "Payload":
        return cls("raw", text)

    @classmethod
    def parsed(cls, value: Any) -> "Payload":
        return cls("parsed", value)

    @classmethod
    def from_body(cls, body: Any) -> "Payload":
        if isinstance(body, bytes):
            body = body.decode("utf-8", errors="replace")
        if isinstance(body, str):
            try:
                return cls.parsed(json.loads(body))
            except ValueError:
                return cls.raw(body)
        return cls.parsed(body)

    @property
    def is_parsed(self) -> bool:
        return self.kind == "parsed"


def _try_json(text: str) -> Any:
    s = text.strip()
    if not s or s[0] not in "[{":
        return text
    try:
        return json.loads(s)
    except ValueError:
        logger.warning("Nested field is not valid JSON; leaving it as a string.")
        return text


def decode_nested_fields(data: Any, nested_fields=("con",)) -> Any:
    """
    Second decode step for JSON answers that carry JSON-in-a-string.
    - field is a list whose first item is a string -> decode that item
    - field is a JSON-looking string -> decode it
    Never raises; undecodable values are left alone.
    """
    if not isinstance(data, dict):
        return data
    out = dict(data)
    for name in nested_fields:
        value = out.get(name)
        if isinstance(value, list) and value and isinstance(value[0], str):
            decoded = _try_json(value[0])
            if decoded is not value[0]:
                out[name] = decoded
        elif isinstance(value, str):
            out[name] = _try_json(value)
    return out


def decode_result(body: Any, nested_fields=("con",)) -> Any:
    """Best-effort JSON decode of a search answer, then the nested-field pass."""
    payload = Payload.from_body(body)
    if not payload.is_parsed:
        return payload.value
    return decode_nested_fields(payload.value, nested_fields)


def find_image_start(data: bytes, window: int = CAPTCHA_SEARCH_WINDOW) -> Tuple[int, Optional[str]]:
    """Earliest known image signature in the first `window` bytes. (-1, None) when absent."""
    head = data[:window]
    best, mime = -1, None
    for signature, sig_mime in IMAGE_SIGNATURES:
        idx = head.find(signature)
        if idx != -1 and (best == -1 or idx < best):
            best, mime = idx, sig_mime
    return best, mime


def decode_captcha_image(body: Any, content_type: Optional[str]) -> Tuple[bytes, str]:
    """
    Validate a captcha answer and strip any junk bytes before the image.
    Returns (image_bytes, mime_type).
    """
    ctype = (content_type or "image/png").split(";", 1)[0].strip().lower() or "image/png"
    data = body.encode("latin-1", errors="ignore") if isinstance(body, str) else bytes(body or b"")

    if not ctype.startswith("image/"):
        logger.error(
            "Non-image content type for captcha: %s. Preview: %s",
            ctype,
            data[:500].decode("utf-8", errors="replace"),
        )
        raise InvalidCaptchaImageError(f"Received non-image data for captcha: {ctype}")

    if len(data) < 8:
        raise InvalidCaptchaImageError("Received empty or invalid data for captcha.")

    logger.debug("Captcha data %d bytes, head %s", len(data), data[:16].hex())
    start, mime = find_image_start(data)
    if start == -1:
        raise InvalidCaptchaImageError(
            f"No image signature within the first {min(len(data), CAPTCHA_SEARCH_WINDOW)} bytes of captcha data."
        )
    if start:
        logger.info("Found image signature at offset %d. Slicing data.", start)
        data = data[start:]

    try:
        with Image.open(BytesIO(data)) as im:
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise InvalidCaptchaImageError(f"Captcha data is not a readable image: {e}") from e

    return data, mime


def to_data_uri(image: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


# endregion Payload and Captcha Decoding


# region ------------------- Chapter 8: Case Summary -------------------


def _clean_html_from_json_field(txt: Any) -> str:
    """
    Convert JSON-escaped HTML string into normal HTML for BeautifulSoup.
    - replace escaped slashes and unescapes HTML entities.
    - strip leading/trailing quotes if present.
    """
    if not txt:
        return ""
    if isinstance(txt, (dict, list)):
        txt = json.dumps(txt)
    s = txt.replace("\\/", "/")
    s = s.replace("\\n", "\n").replace("\\t", "    ")
    s = html.unescape(s)
    if s.startswith('"') and s.endswith('"'):
        s = s[1:-1]
    return s


def _html_from_payload(payload: Any) -> str:
    """Find the HTML fragment inside a search answer (plain string or JSON field)."""
    if isinstance(payload, str):
        return _clean_html_from_json_field(payload)
    if isinstance(payload, dict):
        for key in ("data", "html", "result", "con"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return _clean_html_from_json_field(value)
            if isinstance(value, dict):
                nested = _html_from_payload(value)
                if nested:
                    return nested
        for value in payload.values():
            if isinstance(value, str) and ("<table" in value or "<div" in value or "<h3" in value):
                return _clean_html_from_json_field(value)
    return ""


def find_label_value(soup: BeautifulSoup, label: str) -> Optional[str]:
    """
    Find table label cell containing 'label' (case-insensitive),
    then return the adjacent value cell text.
    """
    node = soup.find(string=re.compile(re.escape(label), re.I))
    if not node:
        return None
    tr = node.find_parent("tr")
    if tr:
        cells = tr.find_all(["td", "th"])
        for i, cell in enumerate(cells):
            if re.search(re.escape(label), cell.get_text(" ", strip=True), re.I):
                if i + 1 < len(cells):
                    return cells[i + 1].get_text(" ", strip=True)
    parent = node.parent
    nxt = parent.find_next_sibling() if parent is not None else None
    if nxt:
        return nxt.get_text(" ", strip=True)
    return None


def _parse_date_try(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    # remove ordinal suffixes like '5th'
    s_clean = re.sub(r"(\d+)(?:st|nd|rd|th)", r"\1", s)
    try:
        return dateparser.parse(s_clean, dayfirst=True)
    except (ValueError, OverflowError):
        return None


def listed_when(date_obj: Optional[datetime], today=None) -> str:
    if not date_obj:
        return "none"
    today = today or datetime.now().date()
    if date_obj.date() == today:
        return "today"
    if date_obj.date() == today + timedelta(days=1):
        return "tomorrow"
    return "other"


def summarize_case_html(payload: Any, today=None) -> Dict[str, Any]:
    """
    Pull the usual case fields out of a CNR answer. Best effort: missing
    fields are None and nothing here raises on odd markup.
    """
    text = _html_from_payload(payload)
    out: Dict[str, Any] = {"found": False, "listed_when": "none", "case_history": []}
    if not text or "<" not in text:
        return out

    soup = make_soup(text)
    out["cnr"] = find_label_value(soup, "CNR Number") or find_label_value(soup, "CNR")
    out["case_type"] = find_label_value(soup, "Case Type")
    out["filing_date"] = find_label_value(soup, "Filing Date")
    out["registration_number"] = find_label_value(soup, "Registration Number")
    out["first_hearing_date"] = find_label_value(soup, "First Hearing Date")
    out["next_hearing_date"] = find_label_value(soup, "Next Hearing Date")
    out["case_stage"] = find_label_value(soup, "Case Stage")
    out["court_name"] = find_label_value(soup, "Court Number and Judge")

    history_table = soup.find("table", {"class": re.compile(r"history", re.I)})
    if history_table:
        for tr in history_table.find_all("tr"):
            cols = [td.get_text(" ", strip=True) for td in tr.find_all("td")]
            if len(cols) >= 3:
                out["case_history"].append(
                    {
                        "judge": cols[0],
                        "business_on_date": cols[1],
                        "hearing_date": cols[2],
                        "purpose": cols[3] if len(cols) > 3 else "",
                    }
                )

    chosen = _parse_date_try(out.get("next_hearing_date")) or _parse_date_try(out.get("first_hearing_date"))
    out["listed_when"] = listed_when(chosen, today=today)
    if chosen:
        out["next_hearing_date_parsed"] = chosen.date().isoformat()
    out["found"] = bool(out.get("cnr") or out.get("case_type") or out["case_history"])
    return out


# endregion Case Summary


# region ------------------- Chapter 9: Session State -------------------


@dataclass
class SessionState:
    # district court flow
    cookies: Optional[str] = None
    states: Optional[List[Dict[str, str]]] = None
    selected_state_link: Optional[str] = None
    districts: Optional[List[Dict[str, str]]] = None
    selected_district_court_url: Optional[str] = None
    scid: Optional[str] = None
    token: Optional[Dict[str, str]] = None
    last_results: Any = None
    # High Court flow
    hc_cookies: Optional[str] = None
    selected_highcourt: Optional[str] = None
    benches: Optional[List[Dict[str, str]]] = None
    selected_bench: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(asdict(self))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SessionState":
        known = {f.name for f in fields(cls)}
        return cls(**{k: copy.deepcopy(v) for k, v in (data or {}).items() if k in known})

    def reset_district_flow(self, cookies: str, states: List[Dict[str, str]]):
        self.cookies = cookies
        self.states = states
        self.selected_state_link = None
        self.districts = None
        self.selected_district_court_url = None
        self.scid = None
        self.token = None
        self.last_results = None


class SessionStore:
    """Keyed store for SessionState. Backends own persistence and expiry."""

    def get(self, session_id: str) -> Optional[SessionState]:
        raise NotImplementedError

    def put(self, session_id: str, state: SessionState) -> None:
        raise NotImplementedError


class MemorySessionStore(SessionStore):
    """
    In-process store for a single worker process. Holds serialized copies
    so callers never share a live object. No locking: concurrent requests
    for one session race and the last put wins.
    With max_age (seconds), entries not written for that long are dropped.
    Without it nothing is ever evicted, which only suits development.
    """

    def __init__(self, max_age: Optional[float] = None, clock=time.monotonic):
        self.max_age = max_age
        self._clock = clock
        self._data: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def _purge(self):
        if self.max_age is None:
            return
        cutoff = self._clock() - self.max_age
        expired = [sid for sid, (saved_at, _) in list(self._data.items()) if saved_at < cutoff]
        for sid in expired:
            self._data.pop(sid, None)
        if expired:
            logger.info("Dropped %d expired sessions.", len(expired))

    def get(self, session_id):
        self._purge()
        entry = self._data.get(session_id)
        return SessionState.from_dict(entry[1]) if entry is not None else None

    def put(self, session_id, state):
        self._purge()
        self._data[session_id] = (self._clock(), state.to_dict())

    def __len__(self):
        return len(self._data)


def require_fields(state: Optional[SessionState], names, message: Optional[str] = None) -> SessionState:
    """Raise SessionStateError unless every named field is set (None means missing)."""
    if state is None:
        raise SessionStateError(
            message or "Session expired or not initialized. Please fetch states first.",
            missing=list(names),
        )
    missing = [n for n in names if getattr(state, n, None) is None]
    if missing:
        logger.warning("Session check failed; missing %s", missing)
        raise SessionStateError(message or f"Session is missing {', '.join(missing)}.", missing=missing)
    return state


# endregion Session State


# region ------------------- Chapter 10: District Court Flow -------------------


def _scalar_field(value: Any, label: str) -> Optional[str]:
    """String or number from a JSON body as a stripped string; None when empty."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValidationError(f"{label} must be a string or number")
    s = str(value).strip()
    return s or None


def _search_page_url(base_url: str) -> str:
    return base_url + CASE_SEARCH_PATH


def list_states(store: SessionStore, session_id: str, transport: Transport) -> List[Dict[str, str]]:
    """
    - Fetch the eCourts home page
    - Scrape state -> district court links
    - Start a fresh district flow in the session with the home page cookies
    """
    headers = {**COMMON_HEADERS, "Cache-Control": "max-age=0", "Priority": "u=0, i"}
    resp = transport.request("GET", ECOURTS_MAIN_PORTAL_URL, headers=headers, timeout=REQUEST_TIMEOUT)

    cookies = resp.cookies
    logger.info("Initial cookies obtained: %s", cookie_names(cookies))

    states = extract_links(resp.body, STATE_LINK_PATTERN, STATE_CODE_REGEX, ECOURTS_MAIN_PORTAL_URL)
    if not states:
        logger.warning("Could not find any state links on the portal home page.")
    else:
        logger.info("Found %d states.", len(states))

    state = store.get(session_id) or SessionState()
    state.reset_district_flow(cookies, states)
    store.put(session_id, state)
    return [{"name": s["name"], "state_code": s["code"]} for s in states]


def list_districts(store: SessionStore, session_id: str, transport: Transport, state_code: Any) -> List[Dict[str, str]]:
    """Fetch the district list for a state picked by code (or by name)."""
    state = require_fields(
        store.get(session_id),
        ["states", "cookies"],
        "Session expired or not initialized. Please fetch states first.",
    )
    if not state_code:
        raise ValidationError("State code is required")

    selected = resolve_option(state.states, state_code)
    if not selected:
        logger.warning("Invalid state_code received: %s", state_code)
        raise ValidationError("Invalid state_code")

    headers = {**COMMON_HEADERS, "Referer": ECOURTS_MAIN_PORTAL_URL, "Cookie": state.cookies}
    resp = transport.request("GET", selected["href"], headers=headers, timeout=REQUEST_TIMEOUT)

    districts = extract_select_options(resp.body, DISTRICT_SELECT_NAME)
    if not districts:
        logger.warning("Could not find any district options on %s", selected["href"])
    else:
        logger.info("Found %d districts.", len(districts))

    state.cookies = merge_cookies(state.cookies, resp.cookies)
    state.selected_state_link = selected["href"]
    state.districts = districts
    store.put(session_id, state)
    return districts


def normalize_court_url(url: Any) -> str:
    """
    Base URL of a <district>.dcourts.gov.in site: scheme and host only.
    Paths, queries, fragments, credentials and other hosts are rejected.
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("District court base URL is required")
    url = url.strip().rstrip("/")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("District court base URL must be an http(s) URL")
    host = (parsed.hostname or "").lower()
    if (
        not host.endswith(DISTRICT_COURT_HOST_SUFFIX)
        or parsed.username is not None
        or parsed.password is not None
        or parsed.path
        or parsed.params
        or parsed.query
        or parsed.fragment
        or "?" in url
        or "#" in url
    ):
        logger.warning("Rejected district court URL: %s", url)
        raise ValidationError(f"District court base URL must be a {DISTRICT_COURT_HOST_SUFFIX.lstrip('.')} site")
    return url


def select_district_court(store: SessionStore, session_id: str, url: Any) -> str:
    """Pin the <district>.dcourts.gov.in site for the next steps. No network call."""
    state = require_fields(
        store.get(session_id),
        ["cookies"],
        "Session expired or not initialized. Please fetch states first.",
    )
    base_url = normalize_court_url(url)
    state.selected_district_court_url = base_url
    state.scid = None
    state.token = None
    store.put(session_id, state)
    logger.info("Selected district court: %s", base_url)
    return base_url


def init_case_search(store: SessionStore, session_id: str, transport: Transport) -> Dict[str, str]:
    """
    Load the case search page and keep scid + token server-side.
    Only scid and the token *name* go back to the client.
    """
    state = require_fields(
        store.get(session_id),
        ["selected_district_court_url", "cookies"],
        "Session expired or district court not selected. Please select a district first.",
    )
    base_url = state.selected_district_court_url
    headers = {**COMMON_HEADERS, "Accept-Language": "en-US,en;q=0.7", "Referer": base_url + "/", "Cookie": state.cookies}
    resp = transport.request("GET", _search_page_url(base_url), headers=headers, timeout=REQUEST_TIMEOUT)

    try:
        token = extract_hidden_fields(resp.body)
    except ScrapeError:
        logger.error("scid/token missing on %s (%d bytes of HTML)", _search_page_url(base_url), len(resp.body or ""))
        raise

    logger.info("Extracted scid %s and token field %s", token.scid, token.token_name)
    state.cookies = merge_cookies(state.cookies, resp.cookies)
    state.scid = token.scid
    state.token = {"name": token.token_name, "value": token.token_value}
    store.put(session_id, state)
    return {"scid": token.scid, "tokenName": token.token_name}


def fetch_captcha(
    store: SessionStore,
    session_id: str,
    scid: Any,
    transport: Optional[Transport] = None,
) -> Tuple[bytes, str]:
    """
    Fetch the captcha bound to the stored scid.
    Always direct: the image is tied to the session cookies of this host.
    Returns (image_bytes, mime_type).
    """
    state = require_fields(
        store.get(session_id),
        ["selected_district_court_url", "scid", "cookies"],
        "Session expired or case search not initialized. Please start over.",
    )
    if state.scid != scid:
        logger.warning("Captcha request scid mismatch with session.")
        raise SessionStateError("Invalid scid or session mismatch.", status_code=400)

    transport = transport or DirectTransport(proxy_url=PROXY_URL or None, verify=VERIFY_TLS)
    base_url = state.selected_district_court_url
    cookies_to_send = state.cookies
    if "pll_language" not in cookie_names(cookies_to_send):
        cookies_to_send = merge_cookies("pll_language=en", cookies_to_send)
    present = cookie_names(cookies_to_send)
    if "PHPSESSID" not in present:
        logger.warning("PHPSESSID missing from captcha request cookies: %s", present)

    headers = {**IMAGE_HEADERS, "Referer": _search_page_url(base_url), "Cookie": cookies_to_send}
    captcha_url = f"{base_url}{CAPTCHA_PATH}{state.scid}"
    resp = transport.request("GET", captcha_url, headers=headers, response_kind="binary", timeout=REQUEST_TIMEOUT)

    image, mime = decode_captcha_image(resp.body, resp.content_type)

    state.cookies = merge_cookies(cookies_to_send, resp.cookies)
    store.put(session_id, state)
    return image, mime


def _ajax_headers(base_url: str, cookies: str) -> Dict[str, str]:
    return {**AJAX_HEADERS, "Origin": base_url, "Referer": _search_page_url(base_url), "Cookie": cookies}


def submit_search(
    store: SessionStore,
    session_id: str,
    transport: Transport,
    captcha_value: Any,
    search_params: Dict[str, Any],
) -> Any:
    """Litigant-name search: posts the form with the dynamic token field and the solved captcha."""
    state = require_fields(
        store.get(session_id),
        ["selected_district_court_url", "scid", "token", "cookies"],
        "Session expired or case search not initialized. Please start over.",
    )
    if not captcha_value or not search_params:
        raise ValidationError("Missing captcha value or search parameters")

    base_url = state.selected_district_court_url
    payload = [
        ("action", "get_parties"),
        ("es_ajax_request", "1"),
        ("submit", "Search"),
    ]
    payload += [(name, str(search_params.get(name, "") or "")) for name in LITIGANT_SEARCH_FIELDS]
    payload += [
        ("scid", state.scid),
        (state.token["name"], state.token["value"]),
        ("siwp_captcha_value", str(captcha_value)),
    ]

    resp = transport.request(
        "POST",
        base_url + AJAX_PATH,
        data=payload,
        headers=_ajax_headers(base_url, state.cookies),
        response_kind="json",
        timeout=REQUEST_TIMEOUT,
    )
    results = decode_result(resp.body)

    state.cookies = merge_cookies(state.cookies, resp.cookies)
    state.last_results = results
    store.put(session_id, state)
    return results


def submit_search_by_cin(store: SessionStore, session_id: str, transport: Transport, cino: Any) -> Dict[str, Any]:
    """CIN lookup. Needs only the pinned court site and cookies, no captcha."""
    state = require_fields(
        store.get(session_id),
        ["selected_district_court_url", "cookies"],
        "Session expired or district court not selected. Please select a district first.",
    )
    if not cino or not str(cino).strip():
        raise ValidationError("CIN is required")

    base_url = state.selected_district_court_url
    payload = {"cino": str(cino).strip(), "action": "get_cnr_details", "es_ajax_request": "1"}
    resp = transport.request(
        "POST",
        base_url + AJAX_PATH,
        data=payload,
        headers=_ajax_headers(base_url, state.cookies),
        response_kind="json",
        timeout=REQUEST_TIMEOUT,
    )
    results = decode_result(resp.body)

    state.cookies = merge_cookies(state.cookies, resp.cookies)
    store.put(session_id, state)
    return {"results": results, "summary": summarize_case_html(results)}


# endregion District Court Flow


# region ------------------- Chapter 11: High Court Flow -------------------


def fetch_benches(store: SessionStore, session_id: str, transport: Transport, selected_highcourt: Any) -> List[Dict[str, str]]:
    """Bench list for a High Court. Starts a fresh High Court cookie jar."""
    selected_highcourt = _scalar_field(selected_highcourt, "selectedHighcourt")
    if not selected_highcourt:
        raise ValidationError("No highcourt selected")

    payload = {"action_code": "fillHCBench", "state_code": selected_highcourt, "appFlag": "web"}
    headers = {
        "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
        "Accept": "*/*",
        "User-Agent": USER_AGENT,
        "Origin": HC_BASE_URL.rstrip("/"),
        "Referer": HC_BASE_URL,
    }
    resp = transport.request("POST", HC_QUERY_URL, data=payload, headers=headers, timeout=BENCH_TIMEOUT)
    logger.info("Bench response preview: %s", str(resp.body)[:200])

    cookies = resp.cookies
    if not cookies:
        logger.warning("No eCourts cookies received from the bench request.")

    benches = parse_bench_string(resp.body)
    state = store.get(session_id) or SessionState()
    state.selected_highcourt = selected_highcourt
    state.hc_cookies = cookies
    state.benches = benches
    state.selected_bench = None
    store.put(session_id, state)
    return benches


def fetch_hc_captcha(store: SessionStore, session_id: str, transport: Transport, selected_bench: Any) -> str:
    """High Court securimage captcha, as a data URI."""
    state = require_fields(
        store.get(session_id),
        ["selected_highcourt", "hc_cookies"],
        "Session expired or benches not loaded. Please fetch benches first.",
    )
    selected_bench = _scalar_field(selected_bench, "selectedBench")
    if not selected_bench:
        raise ValidationError("No bench selected")

    headers = {**IMAGE_HEADERS, "Accept-Language": "en-US,en;q=0.5", "Referer": HC_BASE_URL, "Cookie": state.hc_cookies}
    resp = transport.request("GET", HC_CAPTCHA_URL, headers=headers, response_kind="binary", timeout=HC_CAPTCHA_TIMEOUT)

    image, mime = decode_captcha_image(resp.body, resp.content_type)
    if not resp.cookies:
        logger.warning("No new cookies received from captcha response; keeping the existing jar.")

    state.selected_bench = selected_bench
    state.hc_cookies = merge_cookies(state.hc_cookies, resp.cookies)
    store.put(session_id, state)
    return to_data_uri(image, mime)


def verify_case(store: SessionStore, session_id: str, transport: Transport, body: Dict[str, Any]) -> Any:
    """
    showRecords query on hcservices.
    court_code / state_code fall back to the bench and High Court picked earlier.
    Cookies are the session jar with any client-supplied cookie string laid over it.
    """
    client_cookies = body.get("cookies")
    if client_cookies is not None and not isinstance(client_cookies, str):
        raise ValidationError("cookies must be a string")

    state = store.get(session_id) or SessionState()
    values = {name: _scalar_field(body.get(name), name) for name in HC_CASE_FIELDS}
    values["court_code"] = values["court_code"] or state.selected_bench
    values["state_code"] = values["state_code"] or state.selected_highcourt

    cookies = merge_cookies(state.hc_cookies or "", client_cookies or "")
    missing = [name for name in HC_CASE_FIELDS if not values.get(name)]
    if not cookies:
        missing.append("cookies")
    if missing:
        logger.error("Missing required fields for case verification: %s", missing)
        raise ValidationError("Missing required fields or cookies", details={"missing": missing})

    payload = {"action_code": "showRecords", **values, "appFlag": "web"}
    headers = {
        **AJAX_HEADERS,
        "Accept-Language": "en-US,en;q=0.5",
        "Origin": HC_BASE_URL.rstrip("/"),
        "Referer": HC_BASE_URL,
        "Cookie": cookies,
    }
    resp = transport.request("POST", HC_QUERY_URL, data=payload, headers=headers, response_kind="json", timeout=REQUEST_TIMEOUT)
    data = decode_result(resp.body, nested_fields=("con",))

    state.hc_cookies = merge_cookies(cookies, resp.cookies)
    store.put(session_id, state)
    return data


# endregion High Court Flow
