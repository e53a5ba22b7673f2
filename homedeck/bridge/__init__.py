"""Home Assistant bridge: device/system push channels and chat storage."""
