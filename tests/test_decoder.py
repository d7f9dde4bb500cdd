import unittest

from protocol.decoder import (
    CurrentAck, CurrentReading, Heartbeat, MessageDecoder, ResetAck, Temperature,
    Unrecognized, VoltageAck, VoltageReading, decode, is_recognized,
)


class TestDecode(unittest.TestCase):

    def test_readings(self):
        v = decode("S_V123")
        self.assertIsInstance(v, VoltageReading)
        self.assertAlmostEqual(v.volts, 12.3, places=3)

        a = decode("S_A050")
        self.assertIsInstance(a, CurrentReading)
        self.assertAlmostEqual(a.amps, 5.0, places=3)

        t = decode("S_T025")
        self.assertIsInstance(t, Temperature)
        self.assertEqual(t.celsius, 25)

    def test_acks(self):
        self.assertAlmostEqual(decode("X_V123").volts, 12.3, places=3)
        self.assertIsInstance(decode("X_V123"), VoltageAck)
        self.assertIsInstance(decode("X_A010"), CurrentAck)
        self.assertAlmostEqual(decode("X_A010").amps, 1.0, places=3)
        self.assertIsInstance(decode("E_RST"), ResetAck)
        self.assertIsInstance(decode("LIVE"), Heartbeat)

    def test_boundaries(self):
        self.assertEqual(decode("S_V000").volts, 0.0)
        self.assertAlmostEqual(decode("S_V999").volts, 99.9, places=3)

    def test_wrong_width_is_unrecognized(self):
        for token in ("S_V12", "S_V1234", "S_VABC", "S_V12a", "S_V١٢٣"):
            with self.subTest(token=token):
                msg = decode(token)
                self.assertIsInstance(msg, Unrecognized)
                self.assertEqual(msg.raw, token)
                self.assertFalse(is_recognized(msg))

    def test_unknown_and_empty(self):
        self.assertIsInstance(decode("FOO"), Unrecognized)
        self.assertIsInstance(decode("E_RSTX"), Unrecognized)
        empty = decode("")
        self.assertIsInstance(empty, Unrecognized)
        self.assertEqual(empty.reason, "Invalid token format")

    def test_kind_field(self):
        self.assertEqual(decode("S_T025").kind, "temperature")
        self.assertEqual(decode("FOO").kind, "unrecognized")


class TestMessageDecoderStats(unittest.TestCase):

    def setUp(self):
        self.now = 5.0
        self.dec = MessageDecoder(clock=lambda: self.now)

    def test_counts(self):
        for token in ("S_T025", "S_V010", "LIVE", "BAD"):
            self.dec.decode(token)
        st = self.dec.stats()
        self.assertEqual(st.total_messages, 4)
        self.assertEqual(st.valid_messages, 3)
        self.assertEqual(st.parse_errors, 1)
        self.assertEqual(st.last_error_token, "BAD")
        self.assertEqual(st.last_error_time, 5.0)
        self.assertAlmostEqual(st.success_rate, 75.0)
        self.assertEqual(st.as_dict()["success_rate"], "75.0%")

    def test_empty_success_rate(self):
        self.assertEqual(self.dec.stats().success_rate, 0.0)

    def test_record_error_and_reset(self):
        self.dec.record_error("[xxxx")
        self.assertEqual(self.dec.stats().parse_errors, 1)
        self.assertEqual(self.dec.stats().total_messages, 0)
        self.dec.reset_stats()
        st = self.dec.stats()
        self.assertEqual((st.total_messages, st.parse_errors), (0, 0))
        self.assertIsNone(st.last_error_token)


if __name__ == "__main__":
    unittest.main()
