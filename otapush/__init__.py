"""otapush - stream firmware images to MQTT-connected devices."""

__version__ = "0.1.0"
