"""
Unit tests for crumble/modules/transfer_decoder.py

SECURITY STORY: Broken payloads are routine in real mail. Every test here
feeds something a relay or a spammer could produce and checks that decoding
keeps going, keeps the bytes it could not use, and says what it repaired.
"""

import unittest

from crumble.modules.message_data import DefectKind
from crumble.modules.transfer_decoder import (
    _decode_counting,
    decode_base64,
    decode_charset,
    decode_payload,
    decode_quoted_printable,
    decode_transfer,
    is_textual,
    normalize_transfer_encoding,
)
from crumble.utils.config import ParserConfig


def _kinds(defects):
    return [d.kind for d in defects]


class TestNormalizeTransferEncoding(unittest.TestCase):

    def test_missing_means_7bit(self):
        self.assertEqual(normalize_transfer_encoding(None), "7bit")
        self.assertEqual(normalize_transfer_encoding(""), "7bit")
        self.assertEqual(normalize_transfer_encoding('  ""  '), "7bit")

    def test_case_and_quotes_ignored(self):
        self.assertEqual(normalize_transfer_encoding(' "Base64" '), "base64")


# ---------------------------------------------------------------------------
# base64
# ---------------------------------------------------------------------------

class TestBase64(unittest.TestCase):

    def test_clean_input(self):
        result = decode_base64(b"aGVsbG8gd29ybGQ=\r\n")

        self.assertEqual(result.data, b"hello world")
        self.assertEqual(result.undecoded_suffix, b"")
        self.assertEqual(result.defects, [])

    def test_line_breaks_inside(self):
        result = decode_base64(b"aGVs\r\nbG8g\nd29y\r\nbGQ=")
        self.assertEqual(result.data, b"hello world")

    def test_invalid_trailing_characters_preserved(self):
        result = decode_base64(b"aGVsbG8=!!")

        self.assertEqual(result.data, b"hello")
        self.assertEqual(result.undecoded_suffix, b"!!")
        self.assertEqual(_kinds(result.defects), [DefectKind.INVALID_BASE64])

    def test_garbage_in_the_middle_stops_decoding(self):
        result = decode_base64(b"aGVs*bG8=")

        self.assertEqual(result.data, b"hel")
        self.assertEqual(result.undecoded_suffix, b"*bG8=")

    def test_missing_padding_repaired(self):
        result = decode_base64(b"aGVsbG8")

        self.assertEqual(result.data, b"hello")
        self.assertEqual(result.undecoded_suffix, b"")
        self.assertEqual(_kinds(result.defects), [DefectKind.BASE64_PADDING])

    def test_dangling_character_kept_as_suffix(self):
        result = decode_base64(b"aGVsbG8gA")

        self.assertEqual(result.data, b"hello ")
        self.assertEqual(result.undecoded_suffix, b"A")
        self.assertIn(DefectKind.INVALID_BASE64, _kinds(result.defects))

    def test_empty_input(self):
        result = decode_base64(b"")
        self.assertEqual(result.data, b"")
        self.assertEqual(result.defects, [])


# ---------------------------------------------------------------------------
# quoted-printable
# ---------------------------------------------------------------------------

class TestQuotedPrintable(unittest.TestCase):

    def test_escapes_and_soft_breaks(self):
        result = decode_quoted_printable(b"caf=C3=a9 =\r\nsoft=\nbreak")

        self.assertEqual(result.data, b"caf\xc3\xa9 softbreak")
        self.assertEqual(result.defects, [])

    def test_soft_break_with_trailing_blanks(self):
        result = decode_quoted_printable(b"a=  \r\nb")
        self.assertEqual(result.data, b"ab")

    def test_invalid_escape_kept_literally(self):
        result = decode_quoted_printable(b"100=ZZ and =")

        self.assertEqual(result.data, b"100=ZZ and ")
        self.assertEqual(_kinds(result.defects), [DefectKind.INVALID_QP_ESCAPE])

    def test_counts_invalid_escapes(self):
        result = decode_quoted_printable(b"=G1 =X =Q")
        self.assertEqual(result.data, b"=G1 =X =Q")
        self.assertIn("3 invalid", result.defects[0].detail)


class TestDecodeTransfer(unittest.TestCase):

    def test_identity_encodings(self):
        for encoding in ("7bit", "8BIT", "binary", None):
            result = decode_transfer(b"=41 raw", encoding)
            self.assertEqual(result.data, b"=41 raw")
            self.assertEqual(result.defects, [])

    def test_dispatch(self):
        self.assertEqual(decode_transfer(b"QQ==", "Base64").data, b"A")
        self.assertEqual(decode_transfer(b"=41", "quoted-printable").data, b"A")

    def test_unknown_encoding_passes_through(self):
        result = decode_transfer(b"begin 644 x", "x-uuencode")

        self.assertEqual(result.data, b"begin 644 x")
        self.assertEqual(result.encoding, "x-uuencode")
        self.assertEqual(_kinds(result.defects), [DefectKind.UNRECOGNIZED_TRANSFER_ENCODING])

    def test_recovery_log_defers_formatting(self):
        with self.assertLogs("crumble.modules.transfer_decoder", level="DEBUG") as logs:
            decode_transfer(b"data", "x-uuencode")

        (record,) = logs.records
        self.assertEqual(record.args, ("x-uuencode",))
        self.assertEqual(record.getMessage(), "Unrecognized transfer encoding x-uuencode; passing through")


# ---------------------------------------------------------------------------
# charsets
# ---------------------------------------------------------------------------

class TestDecodeCharset(unittest.TestCase):

    def setUp(self):
        self.config = ParserConfig()

    def test_declared_charset(self):
        result = decode_charset(b"caf\xe9", "ISO-8859-1", self.config)

        self.assertEqual(result.text, "café")
        self.assertEqual(result.charset, "iso8859-1")
        self.assertEqual(result.substitutions, 0)

    def test_invalid_sequences_are_counted(self):
        result = decode_charset(b"a\xffb\xfec", "utf-8", self.config)

        self.assertEqual(result.text, "a\ufffdb\ufffdc")
        self.assertEqual(result.substitutions, 2)
        self.assertEqual(_kinds(result.defects), [DefectKind.CHARSET_SUBSTITUTION])

    def test_genuine_replacement_character_not_counted(self):
        result = decode_charset("ok \ufffd".encode("utf-8"), "utf-8", self.config)
        self.assertEqual(result.substitutions, 0)
        self.assertEqual(result.defects, [])

    def test_unknown_charset_uses_fallback(self):
        result = decode_charset(b"caf\xe9", "x-bogus", self.config)

        self.assertEqual(result.text, "café")
        self.assertEqual(result.charset, "iso8859-1")
        self.assertEqual(_kinds(result.defects), [DefectKind.UNKNOWN_CHARSET])

    def test_non_text_codec_uses_fallback(self):
        for charset in ("zlib", "base64", "rot13", "idna"):
            with self.subTest(charset=charset):
                result = decode_charset(b"caf\xe9\xff", charset, self.config)

                self.assertEqual(result.text, "caf\xe9\xff")
                self.assertEqual(result.charset, "iso8859-1")
                self.assertEqual(_kinds(result.defects), [DefectKind.UNKNOWN_CHARSET])

    # -- _decode_counting (private helper, tested directly) ----------------

    def test_codec_failure_switches_to_fallback(self):
        result = _decode_counting(b"caf\xe9", "idna", "iso8859-1")

        self.assertEqual(result.text, "caf\xe9")
        self.assertEqual(result.charset, "iso8859-1")
        self.assertEqual(result.substitutions, 0)
        self.assertEqual(_kinds(result.defects), [DefectKind.UNKNOWN_CHARSET])

    def test_fallback_substitutions_still_counted(self):
        result = _decode_counting(b"a\xff", "zlib", "ascii")

        self.assertEqual(result.text, "a\ufffd")
        self.assertEqual(result.substitutions, 1)
        self.assertEqual(_kinds(result.defects),
                         [DefectKind.UNKNOWN_CHARSET, DefectKind.CHARSET_SUBSTITUTION])

    def test_undeclared_ascii(self):
        result = decode_charset(b"plain", None, self.config)
        self.assertEqual(result.text, "plain")
        self.assertEqual(result.charset, "ascii")

    def test_undeclared_utf8_is_inferred(self):
        result = decode_charset("café".encode("utf-8"), None, self.config)

        self.assertEqual(result.text, "café")
        self.assertEqual(result.charset, "utf-8")
        self.assertEqual(result.defects, [])

    def test_inference_can_be_disabled(self):
        config = ParserConfig(infer_utf8=False)
        result = decode_charset("café".encode("utf-8"), None, config)

        self.assertEqual(result.charset, "ascii")
        self.assertEqual(result.substitutions, 2)

    def test_undeclared_garbage_uses_default_with_substitutions(self):
        result = decode_charset(b"\xff", None, self.config)

        self.assertEqual(result.text, "\ufffd")
        self.assertEqual(result.charset, "ascii")
        self.assertEqual(result.substitutions, 1)


class TestDecodePayload(unittest.TestCase):

    def test_textual_payload(self):
        payload = decode_payload(b"caf=C3=A9", "quoted-printable", "utf-8", ParserConfig())

        self.assertEqual(payload.text, "café")
        self.assertEqual(payload.data, b"caf\xc3\xa9")
        self.assertEqual(payload.original, b"caf=C3=A9")
        self.assertEqual(payload.encoding, "quoted-printable")
        self.assertEqual(payload.charset, "utf-8")
        self.assertFalse(payload.recovered)

    def test_binary_payload_has_no_text(self):
        payload = decode_payload(b"AAEC", "base64", None, ParserConfig(), textual=False)

        self.assertIsNone(payload.text)
        self.assertIsNone(payload.charset)
        self.assertEqual(payload.data, b"\x00\x01\x02")

    def test_recovered_flag(self):
        payload = decode_payload(b"aGVsbG8=!!", "base64", None, ParserConfig())

        self.assertEqual(payload.text, "hello")
        self.assertEqual(payload.undecoded_suffix, b"!!")
        self.assertTrue(payload.recovered)

    def test_is_textual(self):
        self.assertTrue(is_textual("text/html", None))
        self.assertTrue(is_textual("application/json", "utf-8"))
        self.assertFalse(is_textual("image/png", None))


if __name__ == '__main__':
    unittest.main()
