"""Top-K shortlist selection with sticky operator overrides."""

from __future__ import annotations

from typing import Mapping, Sequence

from ..errors import ShortlistOverrideError
from ..models import ShortlistOrigin


class ShortlistSelector:
    """Pick at most ``size`` records from a score-ordered id list.

    Overrides map record id → include flag. Forced-in records always take
    a slot, forced-out ones are never auto-selected, and the remaining
    slots are filled in ranking order.
    """

    def __init__(self, size: int = 10) -> None:
        if size < 1:
            raise ValueError("shortlist size must be >= 1")
        self.size = size

    def select(
        self, ordered_ids: Sequence[str], overrides: Mapping[str, bool] | None = None
    ) -> dict[str, ShortlistOrigin]:
        overrides = overrides or {}
        forced_in = [record_id for record_id in ordered_ids if overrides.get(record_id) is True]
        if len(forced_in) > self.size:
            raise ShortlistOverrideError(
                f"{len(forced_in)} records forced onto a shortlist of {self.size}"
            )
        selected: dict[str, ShortlistOrigin] = {
            record_id: ShortlistOrigin.MANUAL for record_id in forced_in
        }
        for record_id in ordered_ids:
            if len(selected) >= self.size:
                break
            if record_id in selected or overrides.get(record_id) is False:
                continue
            selected[record_id] = ShortlistOrigin.AUTO
        return selected

    def check_override(
        self,
        ordered_ids: Sequence[str],
        overrides: Mapping[str, bool],
        record_id: str,
        include: bool,
    ) -> None:
        """Raise ``ShortlistOverrideError`` if the override cannot be honoured."""

        if record_id not in ordered_ids:
            raise ShortlistOverrideError(f"Record {record_id} is not part of this run")
        if not include:
            return
        forced = {rid for rid, flag in overrides.items() if flag and rid in ordered_ids}
        forced.add(record_id)
        if len(forced) > self.size:
            raise ShortlistOverrideError(
                f"Shortlist already holds {self.size} manually included records"
            )


__all__ = ["ShortlistSelector"]
