import unittest

from functions import (
    DISTRICT_SELECT_NAME,
    ECOURTS_MAIN_PORTAL_URL,
    STATE_CODE_REGEX,
    STATE_LINK_PATTERN,
    ScrapeError,
    extract_hidden_fields,
    extract_links,
    extract_select_options,
    parse_bench_string,
    resolve_option,
)

from helpers import DISTRICTS_HTML, SEARCH_PAGE_HTML, STATES_HTML


class ExtractLinksTestCase(unittest.TestCase):
    def test_state_links_are_absolute_and_deduplicated(self):
        links = extract_links(STATES_HTML, STATE_LINK_PATTERN, STATE_CODE_REGEX, ECOURTS_MAIN_PORTAL_URL)
        self.assertEqual([l["code"] for l in links], ["maharashtra", "goa"])
        self.assertEqual(
            links[0]["href"],
            "https://ecourts.gov.in/ecourts_home/index.php?p=dist_court/maharashtra",
        )
        self.assertEqual(links[1]["href"], "https://ecourts.gov.in/ecourts_home/index.php?p=dist_court/goa")
        self.assertEqual(links[1]["name"], "Goa")

    def test_string_regex_and_no_matches(self):
        self.assertEqual(extract_links("<p>nothing</p>", STATE_LINK_PATTERN, r"dist_court/(\w+)", ECOURTS_MAIN_PORTAL_URL), [])


class ExtractSelectOptionsTestCase(unittest.TestCase):
    def test_placeholder_is_dropped(self):
        opts = extract_select_options(DISTRICTS_HTML, DISTRICT_SELECT_NAME)
        self.assertEqual(
            opts,
            [
                {"code": "https://pune.dcourts.gov.in", "name": "Pune"},
                {"code": "https://mumbai.dcourts.gov.in", "name": "Mumbai"},
            ],
        )

    def test_select_found_by_id(self):
        html = '<select id="bench"><option value="1">Principal Bench</option></select>'
        self.assertEqual(extract_select_options(html, "bench"), [{"code": "1", "name": "Principal Bench"}])

    def test_missing_select(self):
        self.assertEqual(extract_select_options("<div></div>", DISTRICT_SELECT_NAME), [])


class ExtractHiddenFieldsTestCase(unittest.TestCase):
    def test_scid_and_dynamic_token(self):
        token = extract_hidden_fields(SEARCH_PAGE_HTML)
        self.assertEqual(token.scid, "scid-42")
        self.assertEqual(token.token_name, "tok_9f8e7d")
        self.assertEqual(token.token_value, "token-secret")

    def test_missing_fields_are_named(self):
        with self.assertRaises(ScrapeError) as ctx:
            extract_hidden_fields('<input type="hidden" name="other" value="1">')
        self.assertIn("scid", ctx.exception.missing)
        self.assertIn("token name", ctx.exception.missing)
        self.assertEqual(ctx.exception.status_code, 500)

    def test_missing_token_only(self):
        with self.assertRaises(ScrapeError) as ctx:
            extract_hidden_fields('<input type="hidden" name="scid" value="s1">')
        self.assertNotIn("scid", ctx.exception.missing)


class ParseBenchStringTestCase(unittest.TestCase):
    def test_example(self):
        self.assertEqual(
            parse_bench_string("0~Select Bench#1~Allahabad High Court#"),
            [{"id": "0", "name": "Select Bench"}, {"id": "1", "name": "Allahabad High Court"}],
        )

    def test_non_string_gives_empty_list(self):
        self.assertEqual(parse_bench_string(None), [])
        self.assertEqual(parse_bench_string({"con": []}), [])
        self.assertEqual(parse_bench_string(b"1~x#"), [])

    def test_empty_ids_dropped_and_missing_name_kept_empty(self):
        self.assertEqual(parse_bench_string("~orphan#2#"), [{"id": "2", "name": ""}])


class ResolveOptionTestCase(unittest.TestCase):
    opts = [
        {"code": "maharashtra", "name": "Maharashtra"},
        {"code": "mp", "name": "Madhya Pradesh"},
        {"code": "ap", "name": "Andhra Pradesh"},
    ]

    def test_by_code_name_substring_and_fuzzy(self):
        self.assertEqual(resolve_option(self.opts, "mp")["code"], "mp")
        self.assertEqual(resolve_option(self.opts, "maharashtra")["code"], "maharashtra")
        self.assertEqual(resolve_option(self.opts, "madhya")["code"], "mp")
        self.assertEqual(resolve_option(self.opts, "Maharastra")["code"], "maharashtra")

    def test_ambiguous_or_unknown(self):
        self.assertIsNone(resolve_option(self.opts, "Pradesh"))
        self.assertIsNone(resolve_option(self.opts, "Atlantis"))
        self.assertIsNone(resolve_option(self.opts, ""))


if __name__ == "__main__":
    unittest.main()
