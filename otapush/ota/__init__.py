"""OTA firmware push over MQTT.

Hands a firmware image to a device with a repeated start announcement
followed by credit-driven chunk streaming on device-scoped topics.
"""
