# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Poll loop and outlet control for a single identified PDU.

PDUPoller owns the device's SNMP channel, its OutletRegistry and a
RefreshTimer. Each cycle reads every outlet status and the power register,
pushes the values to MQTT and re-arms the timer. Failures are logged and
absorbed; the next cycle is the retry.
"""

import asyncio
import logging
import time

from .errors import CommandError, TransportError
from .mqtt_handler import MQTTHandler
from .outlet_registry import OutletRegistry
from .pdu_model import DeviceIdentity, Outlet
from .scheduler import RefreshTimer
from .transport import SNMPChannel

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0

OUTLET_COMMANDS = {"on": True, "off": False}


class PDUPoller:
    """Refresh cycle and command path for one PDU.

    Shared services (MQTT) are passed in from BridgeManager. The channel is
    owned exclusively by this poller and closed by stop().
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        registry: OutletRegistry,
        channel: SNMPChannel,
        mqtt: MQTTHandler,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.identity = identity
        self.registry = registry
        self.channel = channel
        self.mqtt = mqtt
        self.device_id = identity.stable_id
        self.poll_interval = poll_interval
        self._running = False

        self._timer = RefreshTimer(self._on_timer, name=self.device_id)
        self._cycle_task: asyncio.Task | None = None

        # Poll health tracking
        self._poll_count = 0
        self._poll_errors = 0
        self._last_poll_duration: float | None = None
        self._last_successful_poll: float | None = None
        self._subsystem_errors: dict[str, int] = {"mqtt": 0}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timer_armed(self) -> bool:
        return self._timer.armed

    # -- Poll loop --------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Begin polling; the first cycle runs immediately."""
        self._running = True
        logger.info(
            "[%s] Monitoring %d outlets on %s (%s) every %.0fs",
            self.device_id, len(self.registry), self.identity.host,
            self.identity.manufacturer, self.poll_interval,
        )
        return self._spawn_cycle()

    async def refresh(self):
        """Run a cycle now instead of waiting for the timer.

        The pending timer is cancelled first. If a cycle is already in
        flight this joins it rather than starting a second one.
        """
        self._timer.cancel()
        await asyncio.shield(self._spawn_cycle())

    def _on_timer(self):
        self._spawn_cycle()

    def _spawn_cycle(self) -> asyncio.Task:
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.get_running_loop().create_task(
                self._run_cycle(), name=f"poll-{self.device_id}",
            )
        return self._cycle_task

    async def _run_cycle(self):
        self._timer.cancel()
        poll_start = time.monotonic()
        try:
            outlets_ok = await self._poll_outlets()
            power_ok = await self._poll_power()

            self._poll_count += 1
            self._last_poll_duration = time.monotonic() - poll_start
            if outlets_ok and power_ok:
                self._last_successful_poll = time.time()

            if self._poll_count % 60 == 1:
                logger.info(
                    "[%s] Poll #%d: %d/%d outlets on, %.1fW (%.0fms)",
                    self.device_id, self._poll_count,
                    sum(self.registry.states()), len(self.registry),
                    self.registry.power, self._last_poll_duration * 1000,
                )
        finally:
            if self._running:
                self._timer.arm(self.poll_interval)

    async def _poll_outlets(self) -> bool:
        """Read every outlet status and push it. Returns False on failure."""
        if not self.registry.outlets:
            return True
        profile = self.identity.profile
        try:
            varbinds = await self.channel.get(self.registry.status_oids())
            states = [profile.decode(value) for _oid, value in varbinds]
        except TransportError as e:
            self._record_poll_error("outlet status", e)
            return False
        except (ValueError, TypeError) as e:
            self._record_poll_error("outlet status", f"malformed value: {e}")
            return False

        if len(states) != len(self.registry):
            self._record_poll_error(
                "outlet status",
                f"expected {len(self.registry)} values, got {len(states)}",
            )
            return False

        for outlet, on in zip(self.registry.outlets, states):
            outlet.on = on
            self._push_outlet(outlet)
        return True

    async def _poll_power(self) -> bool:
        """Read the power register and push watts. Returns False on failure."""
        try:
            varbinds = await self.channel.get([self.identity.profile.power])
            watts = self.registry.set_power(varbinds[0][1])
        except TransportError as e:
            self._record_poll_error("power", e)
            return False
        except (ValueError, TypeError, IndexError) as e:
            self._record_poll_error("power", f"malformed value: {e}")
            return False

        self._push_power(watts)
        return True

    def _record_poll_error(self, what: str, error):
        self._poll_errors += 1
        if self._poll_errors <= 5 or self._poll_errors % 30 == 0:
            logger.warning(
                "[%s] Poll %s failed (error %d): %s",
                self.device_id, what, self._poll_errors, error,
            )

    # -- Subsystem isolation ----------------------------------------------

    def _push_outlet(self, outlet: Outlet):
        """Publish one outlet state to MQTT, catching errors independently."""
        try:
            self.mqtt.publish_outlet_state(self.device_id, outlet.number, outlet.on)
        except Exception:
            self._record_publish_error()

    def _push_power(self, watts: float):
        try:
            self.mqtt.publish_power(self.device_id, watts)
        except Exception:
            self._record_publish_error()

    def _record_publish_error(self):
        self._subsystem_errors["mqtt"] += 1
        if self._subsystem_errors["mqtt"] <= 3:
            logger.exception("[%s] MQTT publish error", self.device_id)

    # -- Command handling -------------------------------------------------

    async def set_outlet(self, index: int, on: bool):
        """Switch one outlet.

        Raises IndexError for an index outside the registry and
        CommandError when the SET fails; in that case the cached state is
        left as it was.
        """
        outlet = self.registry.outlet(index)
        profile = self.identity.profile
        oid = profile.outlet_status_oid(index)
        logger.info("[%s] Switching outlet %d to %s",
                    self.device_id, outlet.number, "on" if on else "off")
        try:
            await self.channel.set([(oid, "integer", profile.encode(on))])
        except TransportError as e:
            logger.error("[%s] Error switching outlet %d to %s: %s",
                         self.device_id, outlet.number, "on" if on else "off", e)
            raise CommandError(index, on, str(e)) from e

        outlet.on = on
        self._push_outlet(outlet)

    async def handle_command(self, outlet_num: int, command_str: str):
        """Handle an outlet command from MQTT (1-based outlet number)."""
        if command_str not in OUTLET_COMMANDS:
            self.mqtt.publish_command_response(
                self.device_id, outlet_num, command_str, False,
                f"unknown command: {command_str}",
            )
            return

        error = None
        try:
            await self.set_outlet(outlet_num - 1, OUTLET_COMMANDS[command_str])
        except IndexError as e:
            error = str(e)
        except CommandError as e:
            error = str(e)

        self.mqtt.publish_command_response(
            self.device_id, outlet_num, command_str, error is None, error,
        )
        logger.info(
            "[%s] Command outlet %d %s -> %s",
            self.device_id, outlet_num, command_str,
            "OK" if error is None else "FAILED",
        )

    async def read_outlet(self, index: int) -> bool:
        """Fetch one outlet's status right now, cache it and push it."""
        outlet = self.registry.outlet(index)
        varbinds = await self.channel.get(
            [self.identity.profile.outlet_status_oid(index)]
        )
        try:
            outlet.on = self.identity.profile.decode(varbinds[0][1])
        except (ValueError, TypeError, IndexError) as e:
            raise TransportError(f"malformed outlet status: {e}") from e
        self._push_outlet(outlet)
        return outlet.on

    async def read_power(self) -> float:
        """Fetch the power register right now, cache it and push it."""
        varbinds = await self.channel.get([self.identity.profile.power])
        try:
            watts = self.registry.set_power(varbinds[0][1])
        except (ValueError, TypeError, IndexError) as e:
            raise TransportError(f"malformed power value: {e}") from e
        self._push_power(watts)
        return watts

    async def handle_read(self, outlet_num: int | None = None):
        """Handle an on-demand read from MQTT.

        Reads one outlet (1-based) or, with no outlet number, the power
        register. The fresh value goes out on the usual state topic.
        """
        try:
            if outlet_num is None:
                await self.read_power()
            else:
                await self.read_outlet(outlet_num - 1)
        except (TransportError, IndexError) as e:
            logger.warning("[%s] On-demand read of %s failed: %s",
                           self.device_id,
                           "power" if outlet_num is None else f"outlet {outlet_num}",
                           e)

    # -- Status -----------------------------------------------------------

    def get_status_detail(self) -> dict:
        """Return detailed status for this poller."""
        now = time.time()
        return {
            "device_id": self.device_id,
            "host": self.identity.host,
            "manufacturer": self.identity.manufacturer,
            "running": self._running,
            "timer_armed": self._timer.armed,
            "poll_count": self._poll_count,
            "poll_errors": self._poll_errors,
            "last_poll_duration_ms": round(self._last_poll_duration * 1000, 1) if self._last_poll_duration else None,
            "last_successful_poll": self._last_successful_poll,
            "seconds_since_last_poll": round(now - self._last_successful_poll, 1) if self._last_successful_poll else None,
            "outlets": [{"number": o.number, "name": o.label, "on": o.on}
                        for o in self.registry.outlets],
            "power": self.registry.power,
            "transport_health": self.channel.get_health(),
            "subsystem_errors": dict(self._subsystem_errors),
        }

    def stop(self):
        self._running = False
        self._timer.cancel()
        self.channel.close()

    async def wait_stopped(self):
        """Wait for a cycle still in flight at stop() to finish."""
        task = self._cycle_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
