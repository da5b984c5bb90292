import unittest

from functions import cookie_names, extract_cookies, merge_cookies, parse_cookie_string


class ExtractCookiesTestCase(unittest.TestCase):
    def test_empty_input(self):
        self.assertEqual(extract_cookies([]), "")
        self.assertEqual(extract_cookies(None), "")

    def test_keeps_name_value_prefix_only(self):
        self.assertEqual(extract_cookies(["A=1; Path=/", "B=2; HttpOnly"]), "A=1; B=2")

    def test_skips_blank_headers(self):
        self.assertEqual(extract_cookies(["", "PHPSESSID=abc; path=/; secure"]), "PHPSESSID=abc")


class MergeCookiesTestCase(unittest.TestCase):
    def test_incoming_wins_on_collision(self):
        merged = merge_cookies("PHPSESSID=old; pll_language=en", "PHPSESSID=new")
        self.assertEqual(merged, "PHPSESSID=new; pll_language=en")
        self.assertNotIn("old", merged)

    def test_new_names_are_appended(self):
        self.assertEqual(merge_cookies("A=1", "B=2"), "A=1; B=2")

    def test_idempotent_for_repeated_incoming(self):
        a = "A=1; B=2; C=3"
        b = "B=20; D=4"
        once = merge_cookies(a, b)
        self.assertEqual(merge_cookies(once, b), once)

    def test_empty_incoming_returns_existing_unchanged(self):
        self.assertEqual(merge_cookies("weird;;A=1", ""), "weird;;A=1")
        self.assertEqual(merge_cookies("A=1", None), "A=1")

    def test_empty_existing(self):
        self.assertEqual(merge_cookies("", "A=1; B=2"), "A=1; B=2")
        self.assertEqual(merge_cookies(None, "A=1"), "A=1")

    def test_malformed_fragments_are_skipped(self):
        self.assertEqual(merge_cookies("A=1; garbage", "=nameless; B=2"), "A=1; B=2")

    def test_values_may_contain_equals(self):
        self.assertEqual(parse_cookie_string("tok=abc==; x=1"), {"tok": "abc==", "x": "1"})
        self.assertEqual(merge_cookies("tok=abc==", "x=1"), "tok=abc==; x=1")

    def test_cookie_names(self):
        self.assertEqual(cookie_names("A=1; B=2"), ["A", "B"])


if __name__ == "__main__":
    unittest.main()
