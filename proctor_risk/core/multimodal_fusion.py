"""
Cross-Modal Fusion Module

Carries mouth-motion data from the vision scorer to the audio scorer's
lip-sync calculation through a single-slot, latest-value-wins sink.
"""

from typing import Optional

from .models import MouthData


class MouthDataSink:
    """
    Single-slot mailbox between the vision tick (writer) and the audio tick (reader).

    ``publish`` replaces the slot with a new immutable ``MouthData`` object in one
    reference assignment, so readers always see a complete value and neither
    side blocks the other. Nothing is queued.
    """

    def __init__(self):
        self._latest: Optional[MouthData] = None
        self.publish_count = 0

    def publish(self, openness: float, velocity: float, timestamp_ms: float) -> None:
        self._latest = MouthData(openness=float(openness), velocity=float(velocity),
                                 timestamp_ms=float(timestamp_ms))
        self.publish_count += 1

    def read(self) -> Optional[MouthData]:
        return self._latest

    def clear(self) -> None:
        self._latest = None
