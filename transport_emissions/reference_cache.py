from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Tuple

from transport_emissions.models import BomLineItem, EmissionReference, LifecycleStageChoice
from transport_emissions.record_store import ApiError, RecordStore

logger = logging.getLogger(__name__)

DATASETS = ("references", "lifecycle_choices", "bom_items")


def _matches(text: str, query: str) -> bool:
    return query == "" or query.lower() in text.lower()


class ReferenceCache:
    """Holds the reference catalog, lifecycle vocabulary and BOM items of one product.

    The three datasets load independently: a failing fetch keeps the previous
    contents of its dataset and records the error in ``load_errors``.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._data: Dict[str, Tuple[Any, ...]] = {name: () for name in DATASETS}
        self._generation: Dict[str, int] = {name: 0 for name in DATASETS}
        self._memo: Dict[str, Tuple[Tuple[Any, ...], Tuple[Any, ...], Tuple[Any, ...]]] = {}
        self.load_errors: Dict[str, str] = {}
        self.reference_query = ""
        self.bom_query = ""

    @property
    def references(self) -> Tuple[EmissionReference, ...]:
        return self._data["references"]

    @property
    def lifecycle_choices(self) -> Tuple[LifecycleStageChoice, ...]:
        return self._data["lifecycle_choices"]

    @property
    def bom_items(self) -> Tuple[BomLineItem, ...]:
        return self._data["bom_items"]

    def set_references(self, references: Iterable[EmissionReference]) -> None:
        self._data["references"] = tuple(references)

    def set_lifecycle_choices(self, choices: Iterable[LifecycleStageChoice]) -> None:
        self._data["lifecycle_choices"] = tuple(choices)

    def set_bom_items(self, items: Iterable[BomLineItem]) -> None:
        self._data["bom_items"] = tuple(items)

    async def _load(
        self,
        name: str,
        fetch: Callable[[], Awaitable[Sequence[Any]]],
        assign: Callable[[Iterable[Any]], None],
    ) -> bool:
        self._generation[name] += 1
        generation = self._generation[name]
        try:
            rows = await fetch()
        except (ApiError, ValueError) as exc:
            logger.error("Error fetching %s: %s", name, exc)
            if generation == self._generation[name]:
                self.load_errors[name] = str(exc)
            return False

        if generation != self._generation[name]:
            logger.info("Dropping stale %s response", name)
            return False
        assign(rows)
        self.load_errors.pop(name, None)
        return True

    async def load_references(self) -> bool:
        return await self._load("references", self._store.list_references, self.set_references)

    async def load_lifecycle_choices(self) -> bool:
        return await self._load("lifecycle_choices", self._store.get_lifecycle_choices, self.set_lifecycle_choices)

    async def load_bom_items(self) -> bool:
        return await self._load("bom_items", self._store.list_bom_line_items, self.set_bom_items)

    async def refresh(self) -> Dict[str, bool]:
        """Fetch all three datasets concurrently; never raises."""
        results = await asyncio.gather(
            self.load_references(),
            self.load_lifecycle_choices(),
            self.load_bom_items(),
        )
        return dict(zip(DATASETS, results))

    def _memoized(
        self,
        name: str,
        source: Tuple[Any, ...],
        key: Tuple[Any, ...],
        compute: Callable[[], Iterable[Any]],
    ) -> Tuple[Any, ...]:
        cached = self._memo.get(name)
        if cached is not None and cached[0] is source and cached[1] == key:
            return cached[2]
        result = tuple(compute())
        self._memo[name] = (source, key, result)
        return result

    def filtered_references(self, query: Optional[str] = None) -> Tuple[EmissionReference, ...]:
        query = self.reference_query if query is None else query
        source = self.references
        return self._memoized(
            "references",
            source,
            (query,),
            lambda: (ref for ref in source if _matches(ref.name, query)),
        )

    def filtered_bom_items(
        self, query: Optional[str] = None, exclude: Iterable[int] = ()
    ) -> Tuple[BomLineItem, ...]:
        query = self.bom_query if query is None else query
        excluded = frozenset(exclude)
        source = self.bom_items
        return self._memoized(
            "bom_items",
            source,
            (query, excluded),
            lambda: (
                item
                for item in source
                if item.id not in excluded and (_matches(item.product_name, query) or _matches(str(item.id), query))
            ),
        )
