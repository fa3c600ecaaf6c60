"""Snapshot records and the numbered listing operators pick from."""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from .errors import SelectionError


@dataclass(frozen=True, slots=True)
class Snapshot:
    """One immutable snapshot held by the repository."""

    id: str
    short_id: str
    time: str
    hostname: str
    tags: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, payload: Mapping[str, object]) -> Snapshot:
        """Build a snapshot from one element of ``restic snapshots --json``."""
        full_id = str(payload.get("id", "") or "")
        short_id = str(payload.get("short_id", "") or full_id[:8])
        if not short_id:
            raise ValueError("Snapshot entry is missing an identifier.")
        return cls(
            id=full_id or short_id,
            short_id=short_id,
            time=str(payload.get("time", "") or ""),
            hostname=str(payload.get("hostname", "") or ""),
            tags=_string_tuple(payload.get("tags")),
            paths=_string_tuple(payload.get("paths")),
        )

    @property
    def display_time(self) -> str:
        """Return the timestamp truncated to seconds with ``T`` replaced by a space."""
        return self.time.split(".", 1)[0].replace("T", " ")

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "short_id": self.short_id,
            "time": self.time,
            "hostname": self.hostname,
            "tags": list(self.tags),
            "paths": list(self.paths),
        }


@dataclass(frozen=True, slots=True)
class SnapshotListing:
    """An ordered, 1-indexed view of the repository taken at one point in time.

    The listing is a plain value: callers hand it to delete/restore rather than
    relying on state left behind by an earlier ``list`` call.
    """

    snapshots: tuple[Snapshot, ...] = field(default_factory=tuple)

    @classmethod
    def of(cls, snapshots: Iterable[Snapshot]) -> SnapshotListing:
        """Freeze *snapshots* into a listing."""
        return cls(tuple(snapshots))

    def __len__(self) -> int:
        """Return the number of snapshots."""
        return len(self.snapshots)

    def __iter__(self) -> Iterator[Snapshot]:
        """Iterate over the snapshots in listing order."""
        return iter(self.snapshots)

    def numbered(self) -> Iterator[tuple[int, Snapshot]]:
        """Yield ``(ordinal, snapshot)`` pairs starting at 1."""
        return enumerate(self.snapshots, start=1)

    def select(self, ordinal: int | str) -> Snapshot:
        """Return the snapshot at 1-based *ordinal* or raise :class:`SelectionError`."""
        if isinstance(ordinal, str):
            text = ordinal.strip()
            if not text.isdigit():
                raise SelectionError(f"Invalid snapshot number {ordinal!r}.")
            position = int(text)
        elif isinstance(ordinal, bool) or not isinstance(ordinal, int):
            raise SelectionError(f"Invalid snapshot number {ordinal!r}.")
        else:
            position = ordinal
        if not self.snapshots:
            raise SelectionError("No snapshots found.")
        if position < 1 or position > len(self.snapshots):
            raise SelectionError(
                f"Invalid snapshot number {position}; choose between 1 and {len(self.snapshots)}."
            )
        return self.snapshots[position - 1]

    def contains(self, snapshot_id: str) -> bool:
        """Return True when *snapshot_id* (short or full) is in the listing."""
        return any(
            snapshot_id in {snapshot.id, snapshot.short_id} for snapshot in self.snapshots
        )


def _string_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(str(item) for item in value)
    return ()


__all__ = ["Snapshot", "SnapshotListing"]
