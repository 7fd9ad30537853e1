"""
MIME bomb and resource limit tests

SECURITY STORY: Deeply nested or extremely wide multiparts are the classic
way to make a MIME parser burn stack and CPU. Over-limit structure must be
cut off and marked, never walked, and the input size limit must be the one
failure that callers get to see.
"""

import unittest

from crumble.modules.message_data import DefectKind, Leaf
from crumble.modules.mime_parser import MimeParser, parse
from crumble.utils.config import ParserConfig
from crumble.utils.security_validators import (
    HARD_DEPTH_CEILING,
    ResourceLimitExceeded,
)


def _nested(levels: int) -> bytes:
    """Build ``levels`` multiparts nested inside each other around one text part"""
    doc = b"inner"
    for level in reversed(range(levels)):
        boundary = b"b%d" % level
        doc = (b"Content-Type: multipart/mixed; boundary=" + boundary + b"\r\n\r\n"
               b"--" + boundary + b"\r\n" + doc + b"\r\n--" + boundary + b"--\r\n")
    return doc


def _wide(parts: int) -> bytes:
    body = b"".join(b"--w\r\n\r\npart %d\r\n" % i for i in range(parts))
    return b"Content-Type: multipart/mixed; boundary=w\r\n\r\n" + body + b"--w--\r\n"


class TestDepthLimit(unittest.TestCase):

    def test_within_limit_is_fully_parsed(self):
        message = parse(_nested(3), ParserConfig(max_depth=3))

        self.assertFalse(message.truncated)
        self.assertEqual(list(message.leaves())[0].text, "inner")

    def test_over_limit_becomes_truncated_leaf(self):
        message = parse(_nested(10), ParserConfig(max_depth=3))
        messages = list(message.walk())

        self.assertTrue(message.truncated)
        self.assertEqual(sum(m.is_multipart for m in messages), 3)

        cut = messages[-1]
        self.assertEqual(cut.depth, 3)
        self.assertIsInstance(cut.body, Leaf)
        self.assertTrue(cut.body.truncated)
        self.assertEqual(cut.content_type, "multipart/mixed")
        self.assertEqual(_kinds(cut.body.defects), [DefectKind.DEPTH_LIMIT])
        # The undivided remainder still holds every deeper level
        self.assertIn(b"--b9", cut.body.data)
        self.assertIn(b"inner", cut.body.data)

    def test_zero_depth_never_splits(self):
        message = parse(_nested(1), ParserConfig(max_depth=0))
        self.assertFalse(message.is_multipart)
        self.assertTrue(message.truncated)

    def test_far_beyond_limit_does_not_exhaust_stack(self):
        message = parse(_nested(2000))

        self.assertTrue(message.truncated)
        self.assertEqual(max(m.depth for m in message.walk()), 50)

    def test_hard_ceiling_is_usable(self):
        message = parse(_nested(HARD_DEPTH_CEILING + 5), ParserConfig(max_depth=HARD_DEPTH_CEILING))
        self.assertEqual(max(m.depth for m in message.walk()), HARD_DEPTH_CEILING)

    def test_strict_limits_raise(self):
        with self.assertRaises(ResourceLimitExceeded) as ctx:
            parse(_nested(5), ParserConfig(max_depth=2, strict_limits=True))

        self.assertEqual(ctx.exception.limit, "max_depth")
        self.assertEqual(ctx.exception.maximum, 2)

    def test_truncation_is_logged(self):
        parser = MimeParser(ParserConfig(max_depth=1))
        with self.assertLogs(parser.logger, level="WARNING") as logs:
            parser.parse(_nested(3))
        self.assertTrue(any("max depth (1)" in line for line in logs.output))


class TestPartLimit(unittest.TestCase):

    def test_excessive_mime_parts(self):
        message = parse(_wide(10), ParserConfig(max_parts=3))
        parts = message.parts

        self.assertEqual(len(parts), 4)
        self.assertEqual([p.body.text for p in parts[:3]], ["part 0", "part 1", "part 2"])

        remainder = parts[3]
        self.assertEqual(remainder.headers, ())
        self.assertTrue(remainder.body.truncated)
        self.assertEqual(_kinds(remainder.defects), [DefectKind.PART_LIMIT])
        self.assertTrue(remainder.body.data.startswith(b"\r\npart 3"))
        self.assertTrue(remainder.body.data.endswith(b"--w--\r\n"))

        self.assertTrue(message.body.truncated)
        self.assertTrue(message.truncated)
        self.assertIsNone(message.body.epilogue)

    def test_budget_is_document_wide(self):
        inner = b"Content-Type: multipart/mixed; boundary=i\r\n\r\n--i\r\n\r\na\r\n--i\r\n\r\nb\r\n--i--"
        doc = (b"Content-Type: multipart/mixed; boundary=o\r\n\r\n"
               b"--o\r\n" + inner + b"\r\n--o\r\n\r\nc\r\n--o--")
        message = parse(doc, ParserConfig(max_parts=3))

        # outer part 1, its two children, then the budget is spent
        self.assertTrue(message.truncated)
        self.assertEqual(len(message.parts[0].parts), 2)
        self.assertTrue(message.parts[1].body.truncated)

    def test_exact_budget_is_not_truncated(self):
        message = parse(_wide(3), ParserConfig(max_parts=3))
        self.assertFalse(message.truncated)
        self.assertEqual(len(message.parts), 3)

    def test_strict_limits_raise(self):
        with self.assertRaises(ResourceLimitExceeded) as ctx:
            parse(_wide(5), ParserConfig(max_parts=2, strict_limits=True))
        self.assertEqual(ctx.exception.limit, "max_parts")


class TestInputSizeLimit(unittest.TestCase):

    def test_oversized_document_rejected(self):
        with self.assertLogs("crumble.utils.security_validators", level="ERROR"):
            with self.assertRaises(ResourceLimitExceeded) as ctx:
                parse(b"x" * 11, ParserConfig(max_input_bytes=10))

        self.assertEqual(ctx.exception.limit, "max_input_bytes")
        self.assertEqual(ctx.exception.value, 11)
        self.assertEqual(str(ctx.exception), "max_input_bytes exceeded: 11 > 10")

    def test_exact_size_accepted(self):
        self.assertEqual(parse(b"x" * 10, ParserConfig(max_input_bytes=10)).body.text, "x" * 10)

    def test_zero_disables_check(self):
        parse(b"x" * 1000, ParserConfig(max_input_bytes=0))


def _kinds(defects):
    return [d.kind for d in defects]


if __name__ == '__main__':
    unittest.main()
