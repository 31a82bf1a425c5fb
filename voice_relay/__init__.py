"""voice_relay — voice chat front-end relay with barge-in and quota recovery."""

__version__ = "1.0.0"
