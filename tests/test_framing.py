import unittest

from protocol.framing import FrameExtractor, extract, wrap


class TestExtract(unittest.TestCase):

    def test_multiple_frames_in_one_read(self):
        tokens, rest = extract("[S_V010][S_A000][S_T025]")
        self.assertEqual(tokens, ["S_V010", "S_A000", "S_T025"])
        self.assertEqual(rest, "")

    def test_incomplete_frame_is_kept(self):
        tokens, rest = extract("[S_V01")
        self.assertEqual(tokens, [])
        self.assertEqual(rest, "[S_V01")

    def test_stray_open_bracket_resyncs_to_innermost(self):
        tokens, _ = extract("[AB[S_T025]")
        self.assertEqual(tokens, ["S_T025"])

    def test_empty_frame(self):
        tokens, rest = extract("[]")
        self.assertEqual(tokens, [""])
        self.assertEqual(rest, "")

    def test_wrap(self):
        self.assertEqual(wrap("XTMP"), "[XTMP]")


class TestFrameExtractor(unittest.TestCase):

    def setUp(self):
        self.errors = []
        self.fx = FrameExtractor(max_buffer=256, on_overflow=self.errors.append)

    def test_frame_split_across_reads(self):
        self.assertEqual(self.fx.feed(b"[S_V0"), [])
        self.assertEqual(self.fx.pending, "[S_V0")
        self.assertEqual(self.fx.feed(b"10][S_A"), ["S_V010"])
        self.assertEqual(self.fx.feed(b"005]"), ["S_A005"])
        self.assertEqual(self.fx.pending, "")

    def test_noise_outside_frames_is_dropped(self):
        self.assertEqual(self.fx.feed(b"abc[S_T0"), [])
        self.assertEqual(self.fx.pending, "[S_T0")
        self.assertEqual(self.fx.feed(b"25]xyz"), ["S_T025"])
        self.assertEqual(self.fx.pending, "")

    def test_str_input(self):
        self.assertEqual(self.fx.feed("[LIVE]"), ["LIVE"])

    def test_empty_input(self):
        self.assertEqual(self.fx.feed(b""), [])

    def test_overflow_resets_buffer_and_reports(self):
        tokens = self.fx.feed(b"[" + b"x" * 300)
        self.assertEqual(tokens, [])
        self.assertEqual(self.fx.pending, "")
        self.assertEqual(self.fx.overflows, 1)
        self.assertEqual(len(self.errors), 1)
        self.assertEqual(self.errors[0].code, "E202")

        # 리셋 후 정상 동작
        self.assertEqual(self.fx.feed(b"[S_T025]"), ["S_T025"])

    def test_reset(self):
        self.fx.feed(b"[S_V")
        self.fx.reset()
        self.assertEqual(self.fx.pending, "")
        self.assertEqual(self.fx.feed(b"010]"), [])


if __name__ == "__main__":
    unittest.main()
