"""
channels — Per-channel delivery backends.

Each channel module exposes a provider ABC, a real implementation and a
simulated one that logs and records instead of sending. Providers do not
retry; the dispatcher decides what a failure means.
"""
