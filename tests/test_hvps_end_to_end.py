import asyncio
import unittest

from controller.session import ConnectionState, EstopState
from device.hvps import AsyncHVPS
from device.hvps_simulator import HvpsSimulator, SimulatedTransport
from lib.config_common import HVPS_QUEUE_DEFAULT_PRIORITY
from lib.settings import HvpsSettings, MemorySettingsRepository
from util.errors import TransportError, ValidationError

from _support import make_ctx, wait_until

FAST = dict(
    tick_interval_ms=50,
    watchdog_interval_ms=50,
    staleness_threshold_ms=500,
    reconnect_delay_ms=50,
    reconnect_attempts=3,
    stats_interval_ms=0,
)


class TestHvpsEndToEnd(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.sim = HvpsSimulator(temperature=25)
        self.transport = SimulatedTransport(self.sim, response_delay_ms=1)
        self.ctx = make_ctx(**FAST)
        self.events = []
        self.ctx.bus.subscribe(self.events.append)
        self.hvps = AsyncHVPS(self.ctx, transport=self.transport)

    async def asyncTearDown(self):
        await self.hvps.disconnect()

    def _kinds(self, kind):
        return [ev for ev in self.events if ev.kind == kind]

    async def test_connect_and_poll_temperature(self):
        self.assertTrue(await self.hvps.connect())
        self.assertIs(self.hvps.state, ConnectionState.CONNECTED)
        self.assertTrue(await wait_until(lambda: self.transport.written))
        self.assertEqual(self.transport.written[0], b"[XTMP]")

        self.assertTrue(await wait_until(lambda: self.hvps.temperature == 25))
        temps = self._kinds("temperature")
        self.assertEqual(temps[0].value, 25.0)
        states = [ev.state for ev in self._kinds("connection")]
        self.assertEqual(states[:2], ["connecting", "connected"])

    async def test_voltage_setpoint_acknowledged(self):
        await self.hvps.connect()
        self.assertEqual(self.hvps.set_voltage(12.3), 12.3)
        self.assertTrue(self.hvps.setpoints.pending_voltage_ack)

        self.assertTrue(await wait_until(lambda: self._kinds("voltage_ack")))
        self.assertIn(b"[XV123]", self.transport.written)
        self.assertAlmostEqual(self._kinds("voltage_ack")[0].value, 12.3, places=3)
        self.assertFalse(self.hvps.setpoints.pending_voltage_ack)
        self.assertEqual(self._kinds("warning"), [])

        # 시뮬레이터: 전류 = min(floor(V*0.5), 제한)
        self.assertTrue(await wait_until(lambda: self.hvps.current == 6.1))

    async def test_mismatched_ack_warns(self):
        await self.hvps.connect()
        self.transport.muted = True
        self.hvps.set_voltage(12.3)
        self.assertTrue(await wait_until(lambda: b"[XV123]" in self.transport.written))

        self.transport.inject("[X_V100]")
        warnings = self._kinds("warning")
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].code, "E401")
        self.assertFalse(self.hvps.setpoints.pending_voltage_ack)

    async def test_estop_round_trip(self):
        await self.hvps.connect()
        self.hvps.set_voltage(20.0)
        self.assertTrue(await wait_until(lambda: self.sim.voltage == 200))

        self.hvps.request_estop()
        self.assertIs(self.hvps.estop_state, EstopState.REQUESTED)
        self.assertTrue(await wait_until(lambda: self.hvps.estop_state is EstopState.ACKNOWLEDGED))
        self.assertEqual(self.transport.commands.count("ERST"), 1)
        self.assertEqual(self.sim.voltage, 0)
        self.assertTrue(self._kinds("reset_ack"))

    async def test_unknown_token_reported_without_refreshing_link(self):
        await self.hvps.connect()
        self.transport.muted = True
        await asyncio.sleep(0.02)
        before = self.hvps.link.last_rx_at

        self.transport.inject("[FOO]")
        errors = self._kinds("parse_error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].token, "FOO")
        self.assertEqual(errors[0].code, "E201")
        self.assertEqual(self.hvps.link.last_rx_at, before)
        self.assertEqual(self.hvps.get_diagnostics()["parser"]["parse_errors"], 1)

    async def test_stale_and_recovery(self):
        await self.hvps.connect()
        self.transport.muted = True
        self.assertTrue(await wait_until(lambda: self.hvps.state is ConnectionState.STALE))
        # STALE 에서도 폴링은 계속
        sent = len(self.transport.written)
        await asyncio.sleep(0.12)
        self.assertGreater(len(self.transport.written), sent)

        self.transport.muted = False
        self.assertTrue(await wait_until(lambda: self.hvps.state is ConnectionState.CONNECTED))

    async def test_estop_sent_while_stale(self):
        await self.hvps.connect()
        self.transport.muted = True
        self.assertTrue(await wait_until(lambda: self.hvps.state is ConnectionState.STALE))

        n = len(self.transport.written)
        self.hvps.request_estop()
        self.assertIs(self.hvps.estop_state, EstopState.REQUESTED)
        self.assertTrue(await wait_until(lambda: len(self.transport.written) >= n + 2))
        # 이미 떠난 폴 1개 이후 바로 ERST
        self.assertIn(b"[ERST]", self.transport.written[n:n + 2])
        self.assertEqual(self.transport.commands.count("ERST"), 1)
        self.assertIs(self.hvps.state, ConnectionState.STALE)

    async def test_buffer_overflow_kept_out_of_token_stats(self):
        await self.hvps.connect()
        self.transport.muted = True
        await asyncio.sleep(0.02)
        before = self.hvps.get_diagnostics()["parser"]

        self.transport.inject("[" + "x" * 300)
        parser = self.hvps.get_diagnostics()["parser"]
        self.assertEqual(parser["buffer_overflows"], 1)
        self.assertEqual(parser["parse_errors"], before["parse_errors"])
        self.assertEqual(parser["total_messages"], before["total_messages"])
        errors = self._kinds("parse_error")
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].code, "E202")

    async def test_reconnect_forgets_previous_setpoint(self):
        await self.hvps.connect()
        self.transport.muted = True
        self.hvps.set_voltage(12.3)
        self.transport.drop()
        self.assertIsNone(self.hvps.setpoints.voltage_setpoint)
        self.assertTrue(await wait_until(lambda: self.hvps.state is ConnectionState.CONNECTED))

        self.transport.inject("[X_V100]")
        self.assertTrue(self._kinds("voltage_ack"))
        self.assertFalse([ev for ev in self._kinds("warning") if ev.code == "E401"])

    async def test_heartbeat_event(self):
        self.transport.heartbeat_interval_ms = 20
        await self.hvps.connect()
        self.assertTrue(await wait_until(lambda: self._kinds("heartbeat")))

    async def test_unsolicited_drop_reconnects(self):
        await self.hvps.connect()
        await wait_until(lambda: self.hvps.temperature is not None)
        self.transport.drop()
        self.assertIs(self.hvps.state, ConnectionState.ERROR)
        self.assertIsNone(self.hvps.temperature)

        self.assertTrue(await wait_until(lambda: self.hvps.state is ConnectionState.CONNECTED))
        self.assertEqual(self.transport.open_count, 2)

    async def test_reconnect_gives_up_after_max_attempts(self):
        await self.hvps.connect()
        self.transport.fail_open = 10
        self.transport.drop()

        self.assertTrue(await wait_until(
            lambda: any(ev.code == "E105" for ev in self._kinds("warning"))
        ))
        self.assertIs(self.hvps.state, ConnectionState.ERROR)
        self.assertEqual(self.transport.fail_open, 7)

    async def test_estop_requested_while_reconnecting_is_sent_first(self):
        await self.hvps.connect()
        await wait_until(lambda: self.transport.written)
        n = len(self.transport.written)
        self.transport.drop()
        self.hvps.request_estop()
        self.assertIs(self.hvps.estop_state, EstopState.REQUESTED)

        self.assertTrue(await wait_until(lambda: len(self.transport.written) > n))
        self.assertEqual(self.transport.open_count, 2)
        self.assertEqual(self.transport.written[n], b"[ERST]")

    async def test_user_disconnect(self):
        await self.hvps.connect()
        await wait_until(lambda: self.hvps.temperature is not None)
        await self.hvps.disconnect()

        self.assertIs(self.hvps.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.transport.is_open)
        self.assertIsNone(self.hvps.temperature)
        self.assertFalse(self.hvps.scheduler.is_running)

        with self.assertRaises(TransportError) as cm:
            self.hvps.set_voltage(1.0)
        self.assertEqual(cm.exception.code, "E106")
        with self.assertRaises(TransportError):
            self.hvps.request_estop()

        await asyncio.sleep(0.1)
        self.assertEqual(self.transport.open_count, 1)

    async def test_connect_failure_then_retry(self):
        self.transport.fail_open = 1
        self.assertFalse(await self.hvps.connect())
        self.assertIs(self.hvps.state, ConnectionState.ERROR)
        self.assertTrue(await self.hvps.connect())
        self.assertIs(self.hvps.state, ConnectionState.CONNECTED)

    async def test_validation_errors_reach_caller(self):
        await self.hvps.connect()
        with self.assertRaises(ValidationError):
            self.hvps.set_voltage(500)
        with self.assertRaises(ValidationError):
            self.hvps.set_current("1")

    async def test_queue_command_and_diagnostics(self):
        await self.hvps.connect()
        self.transport.muted = True
        self.hvps.queue_command("XA", priority=1)
        self.hvps.queue_command("XV")
        diag = self.hvps.get_diagnostics()
        custom = [op for op in diag["pending_operations"] if op["type"] == "custom"]
        self.assertEqual([(op["command"], op["priority"]) for op in custom],
                         [("XA", 1), ("XV", HVPS_QUEUE_DEFAULT_PRIORITY)])
        self.assertEqual(diag["connection"]["state"], "connected")
        self.assertIn("scheduler", diag)
        self.assertIn("pending_operations", diag)
        self.assertEqual(diag["estop"]["state"], "idle")

    async def test_runtime_reconfiguration(self):
        await self.hvps.connect()
        with self.assertRaises(ValueError):
            self.hvps.set_tick_interval(10)
        self.hvps.set_tick_interval(80)
        self.assertEqual(self.hvps.scheduler.tick_interval_ms, 80)
        self.assertTrue(self.hvps.scheduler.is_running)
        self.hvps.set_estop_debounce(500)
        self.assertEqual(self.ctx.settings.estop_debounce_ms, 500)


class TestHvpsSettingsRepository(unittest.IsolatedAsyncioTestCase):

    async def test_settings_loaded_and_saved_through_repository(self):
        repo = MemorySettingsRepository(HvpsSettings(tick_interval_ms=120, stats_interval_ms=0))
        hvps = AsyncHVPS(transport=SimulatedTransport(), settings_repo=repo)
        self.assertEqual(hvps.scheduler.tick_interval_ms, 120)

        hvps.update_settings(staleness_threshold_ms=800, estop_debounce_ms=300)
        self.assertEqual(repo.load().staleness_threshold_ms, 800)
        self.assertEqual(hvps.link.threshold_ms, 800)
        self.assertEqual(hvps.scheduler.estop_debounce_ms, 300)

        with self.assertRaises(ValueError):
            hvps.update_settings(tick_interval_ms=1)

    async def test_unconvertible_setting_rejected_without_side_effects(self):
        repo = MemorySettingsRepository(HvpsSettings(tick_interval_ms=60, stats_interval_ms=0))
        hvps = AsyncHVPS(transport=SimulatedTransport(), settings_repo=repo)

        with self.assertRaises(ValueError) as cm:
            hvps.update_settings(tick_interval_ms="fast")
        self.assertIn("tick_interval_ms", str(cm.exception))
        self.assertEqual(hvps.scheduler.tick_interval_ms, 60)
        self.assertEqual(hvps.ctx.settings.tick_interval_ms, 60)
        self.assertEqual(repo.load().tick_interval_ms, 60)

    async def test_stats_event_emitted(self):
        ctx = make_ctx(**dict(FAST, stats_interval_ms=30))
        seen = []
        ctx.bus.subscribe(seen.append)
        hvps = AsyncHVPS(ctx, transport=SimulatedTransport(response_delay_ms=1))
        await hvps.connect()
        try:
            self.assertTrue(await wait_until(lambda: any(ev.kind == "stats" for ev in seen)))
            stats = next(ev for ev in seen if ev.kind == "stats")
            self.assertIn("parser", stats.data)
        finally:
            await hvps.disconnect()


if __name__ == "__main__":
    unittest.main()
