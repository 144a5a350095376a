# driving/effects.py

import logging
from enum import Enum
from typing import Any, Dict, Optional

from dbus_next.aio import MessageBus
from dbus_next.constants import BusType
from dbus_next import Variant

from core.event_bus import EventBus
from events.events import NavigationRequested

logger = logging.getLogger(__name__)

GSD_POWER_SERVICE = 'org.gnome.SettingsDaemon.Power'
GSD_POWER_PATH = '/org/gnome/SettingsDaemon/Power'
SCREEN_IFACE = 'org.gnome.SettingsDaemon.Power.Screen'

class Pulse(Enum):
    MEDIUM = "medium"    # screen touch
    SUCCESS = "success"  # armed for capture
    HEAVY = "heavy"      # capture requested

class DbusBrightness:
    """
    Screen brightness through gnome-settings-daemon on the session bus.
    Levels are 0.0-1.0; the daemon works in percent.
    """
    def __init__(self):
        self.bus = None
        self.props = None

    async def connect_bus(self):
        if self.bus is None:
            self.bus = await MessageBus(bus_type=BusType.SESSION).connect()
            xml = await self.bus.introspect(GSD_POWER_SERVICE, GSD_POWER_PATH)
            obj = self.bus.get_proxy_object(GSD_POWER_SERVICE, GSD_POWER_PATH, xml)
            self.props = obj.get_interface('org.freedesktop.DBus.Properties')

    async def get_level(self) -> float:
        await self.connect_bus()
        value = await self.props.call_get(SCREEN_IFACE, 'Brightness')
        return value.value / 100.0

    async def set_level(self, level: float) -> None:
        level = min(max(level, 0.0), 1.0)
        await self.connect_bus()
        await self.props.call_set(SCREEN_IFACE, 'Brightness', Variant('i', round(level * 100)))
        logger.debug("Brightness set to %.2f", level)

    def close(self):
        if self.bus is not None:
            self.bus.disconnect()
            self.bus = None

class SoundHaptics:
    """Haptic pulse stand-in for devices without a vibration motor: a short click."""

    def __init__(self, audio, sounds: Dict[str, str]):
        self.audio = audio
        self.sounds = sounds

    async def pulse(self, intensity: Pulse) -> None:
        path = self.sounds.get(intensity.value) or self.sounds.get("pulse")
        if not path:
            logger.debug("No sound configured for %s pulse", intensity.value)
            return
        self.audio.play_concurrent(path)

class BusNavigator:
    """Publishes navigation requests for whichever screen host listens on the bus."""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self.last_request: Optional[NavigationRequested] = None

    def request_navigate(self, target: str, params: Dict[str, Any] = None) -> None:
        event = NavigationRequested(target=target, params=dict(params or {}))
        self.last_request = event
        logger.info("Navigate -> %s %s", target, event.params)
        self.bus.emit(event)
