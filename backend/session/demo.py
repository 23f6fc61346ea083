# backend/session/demo.py
from __future__ import annotations

from typing import Tuple

# Scripted replies for degraded mode, served round-robin.
DEMO_RESPONSES: Tuple[str, ...] = (
    "Hello! I'm Hearth running in demo mode. No compatible GPU was found, so these replies "
    "are simulated. Run Hearth on a machine with a CUDA or Metal GPU for real answers.",
    "I'm currently in demo mode because GPU acceleration isn't available here. This shows how "
    "the chat works; actual AI responses need a supported GPU.",
    "Great question! In demo mode I can show you the conversation flow, but real inference "
    "needs a local accelerator.",
    "Hearth demo mode is active. I can't process your message with a model right now, but "
    "your history is still saved locally.",
    "Thanks for trying Hearth! Demo mode is active because no usable GPU was detected. The full "
    "version runs models entirely on your machine for complete privacy.",
)


class DemoResponder:
    """Deterministic round-robin over a non-empty response pool."""

    def __init__(self, responses: Tuple[str, ...] = DEMO_RESPONSES) -> None:
        if not responses:
            raise ValueError("demo response pool must not be empty")
        self._responses = tuple(responses)
        self._index = 0

    def next_response(self) -> str:
        response = self._responses[self._index % len(self._responses)]
        self._index += 1
        return response
