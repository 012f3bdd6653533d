# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Entry point -- multi-vendor SNMP->MQTT PDU bridge.

Architecture
------------
BridgeManager   -- owns the MQTT connection and the accessory cache,
                   identifies every configured PDU and launches one
                   PDUPoller per identified device.
PDUPoller       -- handles a SINGLE PDU: poll loop, outlet commands.
"""

__version__ = "1.0.0"

import asyncio
import logging
import signal
import sys

from .accessory_cache import Accessory, AccessoryCache
from .config import Config, ConfigError
from .errors import IdentificationError, TransportError
from .identity import resolve_identity
from .mock_pdu import MockSNMPChannel
from .mqtt_handler import MQTTHandler
from .outlet_registry import OutletRegistry
from .pdu_config import PDUConfig, load_pdu_configs
from .pdu_model import DeviceIdentity
from .poller import PDUPoller
from .snmp_client import SNMPClient
from .transport import SNMPChannel

logger = logging.getLogger("pdu_bridge")


class BridgeManager:
    """Top-level orchestrator.

    The only component that talks to the home-automation side: it
    registers accessories (HA discovery + accessory cache) and routes
    MQTT commands to the matching PDUPoller.
    """

    def __init__(self, config: Config | None = None,
                 mqtt: MQTTHandler | None = None):
        self.config = config or Config()
        self._running = False
        self._stop_event: asyncio.Event | None = None

        self.mqtt = mqtt or MQTTHandler(self.config)
        self.accessory_cache = AccessoryCache(self.config.accessory_cache_file)

        self._pdu_configs = load_pdu_configs(
            pdus_file=self.config.pdus_file,
            env_host=self.config.pdu_host,
            env_port=self.config.pdu_snmp_port,
            env_community=self.config.pdu_community,
            mock_mode=self.config.mock_mode,
        )

        # Pollers keyed by stable id
        self.pollers: dict[str, PDUPoller] = {}
        # host -> reason, for devices left out of the fleet
        self.failed_hosts: dict[str, str] = {}

    # -- Channels ---------------------------------------------------------

    def _create_channel(self, pdu_cfg: PDUConfig) -> SNMPChannel:
        if self.config.mock_mode:
            # Serial fixed per address so the stable id survives restarts
            return MockSNMPChannel(
                serial=f"MOCK-{pdu_cfg.host}-{pdu_cfg.snmp_port}",
                device_name=pdu_cfg.label,
            )
        return SNMPClient(pdu_config=pdu_cfg, global_config=self.config)

    # -- Discovery --------------------------------------------------------

    async def discover_devices(self) -> list[PDUPoller]:
        """Identify each configured PDU in order and start its poller.

        A device that fails identification is logged and skipped; the
        rest of the fleet is unaffected.
        """
        started = []
        for pdu_cfg in self._pdu_configs:
            if not pdu_cfg.enabled:
                logger.info("Skipping disabled PDU: %s", pdu_cfg.host)
                continue
            try:
                poller = await self._discover_device(pdu_cfg)
            except Exception:
                logger.exception("[%s] Unexpected error during discovery", pdu_cfg.host)
                self.failed_hosts[pdu_cfg.host] = "unexpected error"
                continue
            if poller is not None:
                started.append(poller)

        self._prune_accessories()
        logger.info(
            "Discovery complete: %d PDU(s) online, %d skipped",
            len(started), len(self.failed_hosts),
        )
        return started

    async def _discover_device(self, pdu_cfg: PDUConfig) -> PDUPoller | None:
        channel = self._create_channel(pdu_cfg)
        try:
            identity = await resolve_identity(channel, pdu_cfg)
        except IdentificationError as e:
            logger.error("[%s] Skipping PDU: %s", pdu_cfg.host, e)
            self.failed_hosts[pdu_cfg.host] = str(e)
            channel.close()
            return None
        except TransportError as e:
            logger.error("[%s] Skipping PDU — not reachable: %s", pdu_cfg.host, e)
            self.failed_hosts[pdu_cfg.host] = str(e)
            channel.close()
            return None

        if identity.stable_id in self.pollers:
            logger.error(
                "[%s] Skipping PDU — serial %s already monitored at %s",
                pdu_cfg.host, identity.serial,
                self.pollers[identity.stable_id].identity.host,
            )
            self.failed_hosts[pdu_cfg.host] = f"duplicate serial {identity.serial}"
            channel.close()
            return None

        registry = OutletRegistry(identity)
        await registry.load_names(channel)

        self._register_accessory(identity, registry)

        poller = PDUPoller(
            identity, registry, channel, self.mqtt,
            poll_interval=self.config.poll_interval,
        )
        self.mqtt.register_device(
            identity.stable_id, poller.handle_command, poller.refresh,
            poller.handle_read,
        )
        self.pollers[identity.stable_id] = poller
        poller.start()
        return poller

    def _register_accessory(self, identity: DeviceIdentity,
                            registry: OutletRegistry) -> Accessory:
        """Attach the device to its cached accessory, or create a new one."""
        accessory = self.accessory_cache.get(identity.stable_id)
        if accessory is not None:
            logger.info("Re-attaching cached accessory: %s (%s)",
                        identity.display_name, identity.stable_id)
            accessory.refresh(identity, registry.outlets)
        else:
            logger.info("Registering new accessory: %s (%s)",
                        identity.display_name, identity.stable_id)
            accessory = Accessory.from_identity(identity, registry.outlets)
            self.accessory_cache.add(accessory)

        self.mqtt.publish_ha_discovery(identity, registry.outlets, force=True)
        return accessory

    def _prune_accessories(self) -> list[Accessory]:
        """Drop cached accessories whose PDU is no longer in the device list.

        A configured device that merely failed this discovery pass keeps its
        accessory so it re-attaches once it answers again.
        """
        configured = {p.host for p in self._pdu_configs if p.enabled}
        removed = []
        for stable_id, accessory in list(self.accessory_cache.accessories.items()):
            if stable_id in self.pollers or accessory.host in configured:
                continue
            logger.info("Removing accessory no longer configured: %s (%s)",
                        accessory.display_name, stable_id)
            self.accessory_cache.remove(stable_id)
            self.mqtt.remove_ha_discovery(stable_id, accessory.outlet_count)
            removed.append(accessory)
        return removed

    # -- Status -----------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "version": __version__,
            "pdus": [p.get_status_detail() for p in self.pollers.values()],
            "failed": dict(self.failed_hosts),
            "accessories": len(self.accessory_cache),
            "mqtt": self.mqtt.get_status(),
        }

    # -- Lifecycle --------------------------------------------------------

    async def run(self):
        """Connect MQTT, discover PDUs and poll until stopped."""
        self._running = True
        self._stop_event = asyncio.Event()

        self.accessory_cache.load()
        self.mqtt.connect()

        await self.discover_devices()
        self.accessory_cache.save()

        await self._stop_event.wait()
        await self.wait_stopped()

    async def wait_stopped(self):
        """Let cycles in flight at stop() run to completion."""
        await asyncio.gather(*(p.wait_stopped() for p in self.pollers.values()))

    def stop(self):
        if not self._running:
            return
        self._running = False

        for poller in self.pollers.values():
            poller.stop()
            self.mqtt.unregister_device(poller.device_id)

        self.accessory_cache.save()
        self.mqtt.disconnect()

        if self._stop_event is not None:
            self._stop_event.set()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    try:
        manager = BridgeManager(config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    loop = asyncio.new_event_loop()

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(manager.stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(manager.run())
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop()
        loop.run_until_complete(manager.wait_stopped())
        loop.close()
        logger.info("Bridge stopped.")


if __name__ == "__main__":
    main()
