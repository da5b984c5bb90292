"""Shared fixtures for the test modules: canned pages and a recording transport."""

from io import BytesIO

from PIL import Image

from functions import RelayResponse, Transport


def png_bytes(size=(40, 16)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, (255, 255, 255)).save(buf, "PNG")
    return buf.getvalue()


STATES_HTML = """
<html><body>
  <a href="/ecourts_home/index.php?p=dist_court/maharashtra">Maharashtra</a>
  <a href="?p=dist_court/goa">Goa</a>
  <a href="/ecourts_home/index.php?p=dist_court/goa">Goa (again)</a>
  <a href="/ecourts_home/index.php?p=about">About</a>
</body></html>
"""

DISTRICTS_HTML = """
<form>
  <select name="sateist">
    <option value="">Please Select</option>
    <option value="https://pune.dcourts.gov.in">Pune</option>
    <option value="https://mumbai.dcourts.gov.in">Mumbai</option>
  </select>
</form>
"""

SEARCH_PAGE_HTML = """
<form id="ecourt-services-case-status-petitioner-respondent">
  <input type="hidden" name="scid" value="scid-42">
  <input type="hidden" name="tok_9f8e7d" value="token-secret">
  <input type="text" name="litigant_name">
</form>
"""

CASE_HTML = """
<table>
  <tr><td>Case Type</td><td>CS - Civil Suit</td></tr>
  <tr><td>Filing Date</td><td>02-01-2025</td></tr>
  <tr><td>CNR Number</td><td>MHPU050000272025</td></tr>
  <tr><td>Next Hearing Date</td><td>18th October 2026</td></tr>
  <tr><td>Case Stage</td><td>Evidence</td></tr>
</table>
<table class="history_table">
  <tr><th>Judge</th><th>Business On Date</th><th>Hearing Date</th><th>Purpose</th></tr>
  <tr><td>Civil Judge</td><td>01-10-2026</td><td>18-10-2026</td><td>Evidence</td></tr>
</table>
"""


def html_response(body, set_cookies=None):
    return RelayResponse(200, {"Content-Type": "text/html; charset=UTF-8"}, body, list(set_cookies or []))


def image_response(body, content_type="image/png", set_cookies=None):
    return RelayResponse(200, {"Content-Type": content_type}, body, list(set_cookies or []))


def json_response(body, set_cookies=None):
    return RelayResponse(200, {"Content-Type": "application/json"}, body, list(set_cookies or []))


class FakeTransport(Transport):
    """Hands out queued responses (or raises queued exceptions) and records every call."""

    name = "fake"

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def request(self, method, target_url, data=None, headers=None, response_kind="text", timeout=60):
        self.calls.append(
            {
                "method": method,
                "url": target_url,
                "data": data,
                "headers": dict(headers or {}),
                "response_kind": response_kind,
                "timeout": timeout,
            }
        )
        if not self.responses:
            raise AssertionError(f"unexpected outbound call: {method} {target_url}")
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt
