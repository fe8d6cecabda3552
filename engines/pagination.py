"""Page placement for report sections using an estimate-then-correct cursor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Tuple


@dataclass(frozen=True)
class Section:
    estimated_height: float
    contract: Any = None


@dataclass(frozen=True)
class Placement:
    page_index: int
    y: float
    section: Section

    @property
    def page_number(self) -> int:
        return self.page_index + 1

    @property
    def estimated_end(self) -> float:
        return self.y + self.section.estimated_height


class ReportPaginator:
    """Decide which page each section goes on and where it starts.

    The cursor starts at ``first_page_top`` (``top_margin`` when omitted). A
    section that does not fit below the cursor moves to a fresh page whose
    cursor restarts at ``top_margin``; sections are never split. Once the
    renderer has drawn a placed section, :meth:`measure` moves the cursor to
    the true end position, or to the estimated end when none is known.
    ``section_gap`` separates consecutive sections on the same page.
    """

    def __init__(
        self,
        content_height: float,
        top_margin: float = 0.0,
        *,
        section_gap: float = 0.0,
        first_page_top: Optional[float] = None,
    ) -> None:
        if content_height <= 0:
            raise ValueError("content_height must be positive")
        if top_margin < 0 or section_gap < 0:
            raise ValueError("top_margin and section_gap must not be negative")
        if first_page_top is None:
            first_page_top = top_margin
        if top_margin >= content_height or not 0 <= first_page_top < content_height:
            raise ValueError("top_margin and first_page_top must lie within content_height")
        self.content_height = content_height
        self.top_margin = top_margin
        self.section_gap = section_gap
        self.first_page_top = first_page_top

        self.page_index = 0
        self.cursor = self.first_page_top
        self._placed_on_page = 0
        self._pending: Optional[Placement] = None

    def _fits(self, y: float, height: float) -> bool:
        return y + height <= self.content_height

    def place(self, section: Section) -> Placement:
        if self._pending is not None:
            self.measure(None)

        y = self.cursor
        if self._placed_on_page:
            y += self.section_gap

        fresh_page = self._placed_on_page == 0 and self.cursor <= self.top_margin
        if not self._fits(y, section.estimated_height) and not fresh_page:
            self.page_index += 1
            self._placed_on_page = 0
            y = self.top_margin

        placement = Placement(page_index=self.page_index, y=y, section=section)
        self._placed_on_page += 1
        self._pending = placement
        return placement

    def measure(self, true_end_y: Optional[float]) -> float:
        """Record where the last placed section really ended and return the new cursor."""

        if self._pending is None:
            return self.cursor
        if true_end_y is None:
            self.cursor = self._pending.estimated_end
        else:
            self.cursor = true_end_y
        self._pending = None
        return self.cursor

    def paginate(
        self,
        sections: Iterable[Section],
        measurer: Optional[Callable[[Placement], Optional[float]]] = None,
    ) -> List[Placement]:
        placements: List[Placement] = []
        for section in sections:
            placement = self.place(section)
            self.measure(measurer(placement) if measurer is not None else None)
            placements.append(placement)
        return placements


def page_layout(placements: Iterable[Placement]) -> List[Tuple[int, Placement]]:
    """Pair each placement with its one-based page number."""

    return [(placement.page_number, placement) for placement in placements]
