import base64
import json
import unittest
from datetime import date

from functions import (
    InvalidCaptchaImageError,
    Payload,
    decode_captcha_image,
    decode_nested_fields,
    decode_result,
    find_image_start,
    summarize_case_html,
    to_data_uri,
)

from helpers import CASE_HTML, png_bytes


class CaptchaImageTestCase(unittest.TestCase):
    def setUp(self):
        self.png = png_bytes()

    def test_clean_png_passes_through(self):
        image, mime = decode_captcha_image(self.png, "image/png")
        self.assertEqual(image, self.png)
        self.assertEqual(mime, "image/png")

    def test_leading_junk_is_stripped(self):
        image, mime = decode_captcha_image(b"\r\n\xef\xbb\xbf  " + self.png, "image/png; charset=UTF-8")
        self.assertEqual(image, self.png)
        self.assertEqual(mime, "image/png")

    def test_missing_content_type_defaults_to_png(self):
        image, _ = decode_captcha_image(self.png, None)
        self.assertEqual(image, self.png)

    def test_non_image_content_type(self):
        with self.assertRaises(InvalidCaptchaImageError):
            decode_captcha_image(b"<html>blocked</html>", "text/html; charset=UTF-8")

    def test_signature_outside_window(self):
        with self.assertRaises(InvalidCaptchaImageError):
            decode_captcha_image(b"x" * 2500 + self.png, "image/png")

    def test_no_signature(self):
        with self.assertRaises(InvalidCaptchaImageError):
            decode_captcha_image(b"not an image at all", "image/png")

    def test_empty_body(self):
        with self.assertRaises(InvalidCaptchaImageError):
            decode_captcha_image(b"", "image/png")

    def test_truncated_png_is_rejected(self):
        with self.assertRaises(InvalidCaptchaImageError):
            decode_captcha_image(self.png[:20], "image/png")

    def test_find_image_start(self):
        self.assertEqual(find_image_start(b"abc" + self.png), (3, "image/png"))
        self.assertEqual(find_image_start(b"plain text"), (-1, None))

    def test_data_uri(self):
        uri = to_data_uri(self.png, "image/png")
        self.assertTrue(uri.startswith("data:image/png;base64,"))
        self.assertEqual(base64.b64decode(uri.split(",", 1)[1]), self.png)


class PayloadTestCase(unittest.TestCase):
    def test_from_body(self):
        self.assertEqual(Payload.from_body('{"a": 1}'), Payload.parsed({"a": 1}))
        self.assertEqual(Payload.from_body(b"[1, 2]"), Payload.parsed([1, 2]))
        self.assertEqual(Payload.from_body("<html></html>"), Payload.raw("<html></html>"))
        self.assertEqual(Payload.from_body({"a": 1}).kind, "parsed")

    def test_nested_con_is_decoded(self):
        body = json.dumps({"con": [json.dumps([{"case_no": "WP/1/2025"}])], "totRecords": 1})
        self.assertEqual(decode_result(body), {"con": [{"case_no": "WP/1/2025"}], "totRecords": 1})

    def test_nested_garbage_is_left_alone(self):
        data = {"con": ["{not json"], "other": "x"}
        self.assertEqual(decode_nested_fields(data), data)
        self.assertEqual(decode_nested_fields({"con": "plain words"}), {"con": "plain words"})
        self.assertEqual(decode_nested_fields("just a string"), "just a string")

    def test_nested_scalars_stay_strings(self):
        data = {"con": ['"quoted text"'], "other": "1"}
        self.assertEqual(decode_nested_fields(data), data)
        self.assertEqual(decode_nested_fields({"con": "42"}), {"con": "42"})

    def test_nested_string_field(self):
        self.assertEqual(decode_nested_fields({"con": '{"a": 1}'}), {"con": {"a": 1}})

    def test_raw_result_stays_text(self):
        self.assertEqual(decode_result("Invalid Captcha"), "Invalid Captcha")


class CaseSummaryTestCase(unittest.TestCase):
    def test_fields_from_json_wrapped_html(self):
        summary = summarize_case_html({"success": True, "data": CASE_HTML}, today=date(2026, 10, 17))
        self.assertTrue(summary["found"])
        self.assertEqual(summary["cnr"], "MHPU050000272025")
        self.assertEqual(summary["case_type"], "CS - Civil Suit")
        self.assertEqual(summary["case_stage"], "Evidence")
        self.assertEqual(summary["next_hearing_date_parsed"], "2026-10-18")
        self.assertEqual(summary["listed_when"], "tomorrow")
        self.assertEqual(len(summary["case_history"]), 1)
        self.assertEqual(summary["case_history"][0]["hearing_date"], "18-10-2026")

    def test_escaped_html_string(self):
        escaped = CASE_HTML.replace("/", "\\/")
        summary = summarize_case_html(escaped, today=date(2026, 10, 18))
        self.assertEqual(summary["listed_when"], "today")

    def test_nothing_to_summarize(self):
        for payload in (None, {}, {"success": False}, "Record not found", 42):
            summary = summarize_case_html(payload)
            self.assertFalse(summary["found"])
            self.assertEqual(summary["listed_when"], "none")


if __name__ == "__main__":
    unittest.main()
