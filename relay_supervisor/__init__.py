"""
Relay supervisor - keeps ffmpeg relays into and out of a local media server running.

Provides process supervision with durable start/stop intent, ffmpeg progress
parsing, a restart policy, run history and real-time event fan-out.
"""

__version__ = "0.1.0"
