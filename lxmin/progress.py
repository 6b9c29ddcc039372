# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Progress sinks.

Orchestration code reports transfer progress through this small interface
and never renders anything itself. The in-flight tracker, the CLI progress
bar and tests all subscribe the same way.
"""

from typing import Protocol


class ProgressSink(Protocol):
    """Receives byte-level transfer progress."""

    def on_start(self, total: int) -> None:
        """Called once the total number of bytes to transfer is known."""
        ...

    def on_bytes_transferred(self, n: int) -> None:
        """Called synchronously after each chunk is read from a transfer stream."""
        ...


class NullProgress:
    """Sink that ignores all progress."""

    def on_start(self, total: int) -> None:
        pass

    def on_bytes_transferred(self, n: int) -> None:
        pass


class TeeProgress:
    """Fan progress out to several sinks, skipping None entries."""

    def __init__(self, *sinks: ProgressSink | None):
        self.sinks = [s for s in sinks if s is not None]

    def on_start(self, total: int) -> None:
        for sink in self.sinks:
            sink.on_start(total)

    def on_bytes_transferred(self, n: int) -> None:
        for sink in self.sinks:
            sink.on_bytes_transferred(n)


class RecordingProgress:
    """Sink that keeps running totals; handy for logging and tests."""

    def __init__(self) -> None:
        self.total = 0
        self.transferred = 0
        self.updates = 0

    def on_start(self, total: int) -> None:
        self.total = total

    def on_bytes_transferred(self, n: int) -> None:
        self.transferred += n
        self.updates += 1
