"""BLE Fast Pair target discovery: filter, track, pick, dispatch."""

__version__ = "0.1.0"
