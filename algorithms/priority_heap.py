import copy
import math
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional

from .priority import calculate_priority


class InvalidEntryError(ValueError):
    pass


class DuplicateEntryError(ValueError):
    pass


def _validate_score(name: str, value: Any):
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEntryError(f"{name} must be an integer, got {value!r}")
    if not 1 <= value <= 5:
        raise InvalidEntryError(f"{name} must be between 1 and 5, got {value}")


@dataclass
class Entry:
    id: str
    vulnerability_score: int
    urgency_score: int
    created_at: float
    priority_score: float = 0.0
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.validate()

    def validate(self):
        if not isinstance(self.id, str) or not self.id:
            raise InvalidEntryError(f"id must be a non-empty string, got {self.id!r}")
        _validate_score("vulnerability_score", self.vulnerability_score)
        _validate_score("urgency_score", self.urgency_score)
        if isinstance(self.created_at, bool) or not isinstance(self.created_at, (int, float)):
            raise InvalidEntryError(f"created_at must be a timestamp, got {self.created_at!r}")
        if not math.isfinite(self.created_at):
            raise InvalidEntryError("created_at must be finite")

    def rescore(self, now: float) -> float:
        self.priority_score = calculate_priority(
            self.vulnerability_score, self.urgency_score, self.created_at, now
        )
        return self.priority_score

    def copy(self) -> "Entry":
        return Entry(
            id=self.id,
            vulnerability_score=self.vulnerability_score,
            urgency_score=self.urgency_score,
            created_at=self.created_at,
            priority_score=self.priority_score,
            payload=copy.deepcopy(self.payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into a plain dict: payload fields plus the scheduling fields."""
        data = dict(self.payload)
        data.update({
            "id": self.id,
            "vulnerability_score": self.vulnerability_score,
            "urgency_score": self.urgency_score,
            "created_at": self.created_at,
            "priority_score": self.priority_score,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Entry":
        """Inverse of to_dict; record store documents load the same way."""
        data = dict(data)
        entry_id = data.pop("id", None)
        try:
            return cls(
                id=entry_id,
                vulnerability_score=data.pop("vulnerability_score"),
                urgency_score=data.pop("urgency_score"),
                created_at=data.pop("created_at"),
                priority_score=data.pop("priority_score", 0.0),
                payload=data,
            )
        except KeyError as exc:
            raise InvalidEntryError(f"missing field {exc.args[0]}") from exc


_FIXED_FIELDS = {f.name for f in fields(Entry)} - {"id", "payload", "priority_score"}


class PriorityHeap:
    """Binary max-heap of Entry keyed by priority_score.

    `index` maps every entry id to its position in `heap`. Every swap keeps
    the two in step so lookups by id stay O(1).
    """

    def __init__(self, clock=time.time):
        self.heap: List[Entry] = []
        self.index: Dict[str, int] = {}
        self.clock = clock

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _parent(self, i: int):
        return (i - 1) // 2

    def _left(self, i: int):
        return 2 * i + 1

    def _right(self, i: int):
        return 2 * i + 2

    def _swap(self, i: int, j: int):
        self.heap[i], self.heap[j] = self.heap[j], self.heap[i]
        self.index[self.heap[i].id] = i
        self.index[self.heap[j].id] = j

    def _bubble_up(self, i: int):
        while i > 0:
            parent = self._parent(i)
            if self.heap[i].priority_score > self.heap[parent].priority_score:
                self._swap(i, parent)
                i = parent
            else:
                break

    def _bubble_down(self, i: int):
        size = len(self.heap)
        while True:
            largest = i
            left = self._left(i)
            right = self._right(i)

            # strict comparisons: on a tie between children the left one wins
            if left < size and self.heap[left].priority_score > self.heap[largest].priority_score:
                largest = left
            if right < size and self.heap[right].priority_score > self.heap[largest].priority_score:
                largest = right

            if largest != i:
                self._swap(i, largest)
                i = largest
            else:
                break

    def _heapify(self):
        for i in range(len(self.heap) // 2 - 1, -1, -1):
            self._bubble_down(i)
        self.index = {entry.id: i for i, entry in enumerate(self.heap)}

    def insert(self, entry: Entry, now: Optional[float] = None) -> Entry:
        if entry.id in self.index:
            raise DuplicateEntryError(f"entry {entry.id} is already queued")
        entry.rescore(self._now(now))
        self.heap.append(entry)
        self.index[entry.id] = len(self.heap) - 1
        self._bubble_up(len(self.heap) - 1)
        return entry

    def extract_max(self):
        if not self.heap:
            return None

        if len(self.heap) == 1:
            max_entry = self.heap.pop()
            del self.index[max_entry.id]
            return max_entry

        max_entry = self.heap[0]
        self.heap[0] = self.heap.pop()
        del self.index[max_entry.id]
        self.index[self.heap[0].id] = 0
        self._bubble_down(0)

        return max_entry

    def peek(self):
        return self.heap[0] if self.heap else None

    def size(self):
        return len(self.heap)

    def is_empty(self):
        return len(self.heap) == 0

    def __contains__(self, entry_id: str):
        return entry_id in self.index

    def get(self, entry_id: str) -> Optional[Entry]:
        i = self.index.get(entry_id)
        return None if i is None else self.heap[i]

    def remove_by_id(self, entry_id: str) -> Optional[Entry]:
        """Remove an entry wherever it sits. Returns None if the id is unknown."""
        i = self.index.get(entry_id)
        if i is None:
            return None

        last = len(self.heap) - 1
        if i != last:
            self._swap(i, last)
        removed = self.heap.pop()
        del self.index[entry_id]

        if i < len(self.heap):
            # the element moved in from the tail may belong above or below i
            self._bubble_down(i)
            self._bubble_up(i)

        return removed

    def update_by_id(self, entry_id: str, changes: Dict[str, Any],
                     now: Optional[float] = None) -> Optional[Entry]:
        """Merge changes into a queued entry and restore heap order around it.

        Scheduling fields are set directly; `id` and `priority_score` are
        ignored; anything else lands in the payload. The merged entry is
        validated before the heap is touched.
        """
        i = self.index.get(entry_id)
        if i is None:
            return None

        entry = self.heap[i]
        candidate = entry.copy()
        for key, value in changes.items():
            if key in _FIXED_FIELDS:
                setattr(candidate, key, value)
            elif key not in ("id", "priority_score"):
                candidate.payload[key] = value
        candidate.validate()

        old_score = entry.priority_score
        candidate.rescore(self._now(now))
        self.heap[i] = candidate

        if candidate.priority_score > old_score:
            self._bubble_up(i)
        elif candidate.priority_score < old_score:
            self._bubble_down(i)

        return candidate

    def recompute_all(self, now: Optional[float] = None):
        """Rescore every entry against one shared `now` and rebuild the heap.

        Wait time grows for every entry at once, so a local re-sift cannot
        catch the reordering; this is the O(n) bottom-up rebuild.
        """
        now = self._now(now)
        for entry in self.heap:
            entry.rescore(now)
        self._heapify()

    def load_from_collection(self, entries: Iterable[Entry], now: Optional[float] = None):
        entries = list(entries)
        seen = set()
        for entry in entries:
            if entry.id in seen:
                raise DuplicateEntryError(f"entry {entry.id} appears more than once")
            seen.add(entry.id)

        now = self._now(now)
        for entry in entries:
            entry.rescore(now)
        self.heap = entries
        self._heapify()

    def get_all_ordered(self, now: Optional[float] = None) -> List[Entry]:
        """Rescore, rebuild and return every entry in descending score order.

        This reorders the heap as a side effect.
        """
        self.recompute_all(now)
        return sorted(self.heap, key=lambda entry: entry.priority_score, reverse=True)

    def clear(self):
        self.heap = []
        self.index = {}
