"""
Scrub window: the sub-range of the retention window currently displayed.
view_start = view_end - display_span_ms; view_end is always clamped to
[min_bound + display_span_ms, max_bound].
"""
from dataclasses import dataclass
from typing import Any


def clamp_view_end(requested: int, min_bound: int, max_bound: int, span: int) -> int:
    lower = min_bound + span
    if lower > max_bound:
        # less data than one display span: show the newest span
        return max_bound
    return min(max(requested, lower), max_bound)


@dataclass
class ScrubWindow:
    display_span_ms: int
    view_end: int | None = None
    follow_live: bool = True

    @property
    def view_start(self) -> int | None:
        if self.view_end is None:
            return None
        return self.view_end - self.display_span_ms

    def recompute(self, min_bound: int, max_bound: int) -> None:
        """Re-apply the clamp after new data; following pins to the newest sample."""
        target = max_bound if self.follow_live or self.view_end is None else self.view_end
        self.view_end = clamp_view_end(target, min_bound, max_bound, self.display_span_ms)

    def drag(self, requested: int, min_bound: int, max_bound: int) -> None:
        """Viewer moved the control: stop following and freeze at the clamped position."""
        self.follow_live = False
        self.view_end = clamp_view_end(requested, min_bound, max_bound, self.display_span_ms)

    def set_follow_live(self, follow: bool, min_bound: int, max_bound: int) -> None:
        self.follow_live = follow
        self.recompute(min_bound, max_bound)

    def jump_to_live(self, min_bound: int, max_bound: int) -> None:
        self.set_follow_live(True, min_bound, max_bound)

    def reset(self) -> None:
        self.view_end = None
        self.follow_live = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "display_span_ms": self.display_span_ms,
            "view_start": self.view_start,
            "view_end": self.view_end,
            "follow_live": self.follow_live,
        }
