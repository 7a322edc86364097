"""
Frequency Accumulators

Immutable counting values used by every aggregate generator. A Counter maps
a derived key to a running count; counting returns a new Counter and leaves
the original untouched, so partial results can be merged in any grouping.
"""

from numbers import Number
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

IGNORED_KEYS = frozenset({"null", "undefined"})

KeyFn = Callable[[Any], Any]
MergeFn = Callable[[Union[int, float], Union[int, float]], Union[int, float]]
FrequencyPairs = List[List[Any]]


def identity(item: Any) -> Any:
    return item


def increment(current: Union[int, float], amount: Union[int, float]) -> Union[int, float]:
    return current + amount


def always_true(item: Any) -> bool:
    return True


def normalize_key(key: Any) -> Optional[str]:
    """
    Turn a derived key into its string form.

    Tuple and list keys are joined with ","; missing parts are skipped.
    Returns None for keys that must not be counted.
    """
    if key is None:
        return None
    if isinstance(key, (tuple, list)):
        parts = [str(part) for part in key if part is not None]
        if not parts:
            return None
        key = ",".join(parts)
    else:
        key = str(key)
    if key in IGNORED_KEYS:
        return None
    return key


def as_number(value: Any) -> Union[int, float]:
    """Numeric value, or 0 for anything that is not a number"""
    if isinstance(value, bool) or not isinstance(value, Number):
        return 0
    return value


class Counter:
    """
    Frequency counter keyed by ``key_fn(item)``.

    Example:
        browsers = Counter(lambda row: row["browser"])
        browsers = browsers.count({"browser": "Firefox"}).count({"browser": "Chrome"})
        browsers.as_frequency()
        # [["Chrome", [1, 0.5]], ["Firefox", [1, 0.5]]]
    """

    __slots__ = ("key_fn", "merge_fn", "_counts")

    def __init__(
        self,
        key_fn: KeyFn = identity,
        merge_fn: MergeFn = increment,
        counts: Optional[Mapping[str, Union[int, float]]] = None,
    ):
        self.key_fn = key_fn
        self.merge_fn = merge_fn
        self._counts: Dict[str, Union[int, float]] = dict(counts or {})

    def key_for(self, item: Any) -> Optional[str]:
        try:
            key = self.key_fn(item)
        except Exception:
            return None
        return normalize_key(key)

    def _accumulate(self, counts: Dict[str, Union[int, float]], item: Any, amount: Union[int, float]) -> None:
        key = self.key_for(item)
        if key is None:
            return
        counts[key] = self.merge_fn(counts.get(key, 0), amount)

    def _with_counts(self, counts: Mapping[str, Union[int, float]]) -> "Counter":
        return Counter(self.key_fn, self.merge_fn, counts)

    def count(self, item: Any) -> "Counter":
        return self.add(1, item)

    def add(self, amount: Union[int, float], item: Any) -> "Counter":
        """Count ``item`` with weight ``amount``"""
        if self.key_for(item) is None:
            return self
        counts = dict(self._counts)
        self._accumulate(counts, item, amount)
        return self._with_counts(counts)

    def count_all(self, items: Iterable[Any]) -> "Counter":
        counts = dict(self._counts)
        for item in items:
            self._accumulate(counts, item, 1)
        return self._with_counts(counts)

    def merge(self, other: "Counter") -> "Counter":
        counts = dict(self._counts)
        for key, value in other._counts.items():
            counts[key] = self.merge_fn(counts.get(key, 0), value)
        return self._with_counts(counts)

    @property
    def counts(self) -> Dict[str, Union[int, float]]:
        return dict(self._counts)

    @property
    def total(self) -> Union[int, float]:
        return sum(self._counts.values())

    def get(self, key: Any) -> Union[int, float]:
        normalized = normalize_key(key)
        return self._counts.get(normalized, 0) if normalized is not None else 0

    def as_frequency(self) -> FrequencyPairs:
        """
        ``[[key, [count, count / total]], ...]`` ordered by count, then key.

        The total is taken at conversion time.
        """
        total = self.total
        ordered = sorted(self._counts.items(), key=lambda pair: (-pair[1], pair[0]))
        return [
            [key, [value, (value / total) if total else 0.0]]
            for key, value in ordered
        ]

    def __len__(self) -> int:
        return len(self._counts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Counter):
            return NotImplemented
        return self._counts == other._counts

    def __repr__(self) -> str:
        return f"Counter({self._counts!r})"


class Summer:
    """
    Numeric accumulator: adds up ``key_fn(item)`` for items passing ``predicate``.

    Values that are not numbers, or whose key function raises, count as 0.
    """

    __slots__ = ("key_fn", "predicate", "total")

    def __init__(
        self,
        key_fn: KeyFn = identity,
        predicate: Callable[[Any], bool] = always_true,
        total: Union[int, float] = 0,
    ):
        self.key_fn = key_fn
        self.predicate = predicate
        self.total = total

    def _value(self, item: Any) -> Union[int, float]:
        try:
            if not self.predicate(item):
                return 0
            return as_number(self.key_fn(item))
        except Exception:
            return 0

    def sum(self, items: Iterable[Any]) -> "Summer":
        total = self.total
        for item in items:
            total += self._value(item)
        return Summer(self.key_fn, self.predicate, total)

    def merge(self, other: "Summer") -> "Summer":
        return Summer(self.key_fn, self.predicate, self.total + other.total)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Summer):
            return NotImplemented
        return self.total == other.total

    def __repr__(self) -> str:
        return f"Summer({self.total!r})"


class CountMapReducer:
    """
    Feeds one dataset through several named Counters in a single pass.

    Example:
        reducer = CountMapReducer({"hour": hour_counter, "country": country_counter})
        reducer.reduce(rows)
        # {"hour": [["14", [3, 0.75]], ...], "country": [...]}
    """

    def __init__(self, counters: Mapping[str, Counter]):
        self.counters = dict(counters)

    def accumulate(self, items: Iterable[Any]) -> Dict[str, Counter]:
        working = {name: counter.counts for name, counter in self.counters.items()}
        for item in items:
            for name, counter in self.counters.items():
                counter._accumulate(working[name], item, 1)
        return {
            name: counter._with_counts(working[name])
            for name, counter in self.counters.items()
        }

    def reduce(self, items: Iterable[Any]) -> Dict[str, FrequencyPairs]:
        return {
            name: counter.as_frequency()
            for name, counter in self.accumulate(items).items()
        }
