import asyncio
import unittest

from device.hvps_simulator import HvpsSimulator, SimulatedTransport
from util.errors import TransportError


class TestHvpsSimulator(unittest.TestCase):

    def setUp(self):
        self.sim = HvpsSimulator(temperature=25, current_limit=100)

    def test_polls(self):
        self.assertEqual(self.sim.process_command("XTMP"), "S_T025")
        self.assertEqual(self.sim.process_command("XV"), "S_V000")
        self.assertEqual(self.sim.process_command("XA"), "S_A000")

    def test_voltage_set_drives_current(self):
        self.assertEqual(self.sim.process_command("XV123"), "X_V123")
        self.assertEqual(self.sim.current, 61)
        self.assertEqual(self.sim.process_command("XV"), "S_V123")

    def test_current_limit_clamps(self):
        self.sim.process_command("XV500")
        self.assertEqual(self.sim.current, 100)
        self.assertEqual(self.sim.process_command("XA050"), "X_A050")
        self.assertEqual(self.sim.current, 50)

    def test_reset(self):
        self.sim.process_command("XV200")
        self.assertEqual(self.sim.process_command("ERST"), "E_RST")
        self.assertEqual((self.sim.voltage, self.sim.current), (0, 0))

    def test_unknown_command_has_no_reply(self):
        for cmd in ("FOO", "XV12", "XVABC", ""):
            with self.subTest(cmd=cmd):
                self.assertIsNone(self.sim.process_command(cmd))


class TestSimulatedTransport(unittest.IsolatedAsyncioTestCase):

    async def test_open_failure_injection(self):
        tr = SimulatedTransport(fail_open=1)
        with self.assertRaises(TransportError) as cm:
            await tr.open()
        self.assertEqual(cm.exception.code, "E102")
        await tr.open()
        self.assertTrue(tr.is_open)
        await tr.close()
        self.assertFalse(tr.is_open)

    async def test_write_when_closed(self):
        tr = SimulatedTransport()
        with self.assertRaises(TransportError) as cm:
            tr.write(b"[XTMP]")
        self.assertEqual(cm.exception.code, "E106")

    async def test_reply_delivered(self):
        got, lost = [], []
        tr = SimulatedTransport(response_delay_ms=0)
        tr.attach(got.append, lost.append)
        await tr.open()
        tr.write(b"[XTMP]")
        for _ in range(3):
            await asyncio.sleep(0)
        self.assertEqual(got, [b"[S_T025]"])

        tr.drop()
        self.assertEqual(len(lost), 1)
        self.assertFalse(tr.is_open)


if __name__ == "__main__":
    unittest.main()
