"""Bounded window of few-shot examples shared by one generation run."""

from collections import deque

from cellforge.services.generation.types import Example


class ExampleWindow:
    """
    Keeps the most recent ``size`` examples. ``size=0`` disables few-shot
    prompting entirely.
    """

    def __init__(self, size: int = 10, seed: list[Example] | None = None):
        if size < 0:
            raise ValueError("size must be >= 0")
        self.size = size
        self._examples: deque[Example] = deque(maxlen=size or None)
        for example in seed or []:
            self.add(example)

    def add(self, example: Example) -> None:
        if self.size == 0 or not example.output:
            return
        # Same output already present: refresh its position instead of duplicating
        for existing in list(self._examples):
            if existing.output == example.output and existing.inputs == example.inputs:
                self._examples.remove(existing)
                break
        self._examples.append(example)

    def snapshot(self) -> list[Example]:
        """Copy of the current window, oldest first."""
        return list(self._examples)

    def __len__(self) -> int:
        return len(self._examples)
