"""Flatten the cached folder tree into ordered, depth-annotated rows."""
from enum import Enum
from functools import cmp_to_key
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence, Set

from pydantic import BaseModel

from kb_picker.schemas.resources import IndexStatus, Resource, TreeRow, map_remote_status


class SortKey(str, Enum):
    NAME = "name"
    MODIFIED = "modified"
    SIZE = "size"
    STATUS = "status"


class SortSpec(BaseModel):
    key: SortKey = SortKey.NAME
    descending: bool = False


class ListingLookup(Protocol):
    def get(self, folder_id: Optional[str]) -> Optional[Sequence[Resource]]: ...


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def _status_value(resource: Resource, statuses: Optional[Mapping[str, IndexStatus]]) -> str:
    if statuses is not None and resource.id in statuses:
        return IndexStatus(statuses[resource.id]).value
    remote = map_remote_status(resource.remote_status)
    return (remote or IndexStatus.UNINDEXED).value


def _sort_value(resource: Resource, key: SortKey, statuses):
    if key == SortKey.NAME:
        return resource.name.lower()
    if key == SortKey.MODIFIED:
        return resource.modified_at.timestamp()
    if key == SortKey.SIZE:
        return resource.size_bytes
    return _status_value(resource, statuses)


def sort_siblings(
    resources: Iterable[Resource],
    spec: Optional[SortSpec],
    statuses: Optional[Mapping[str, IndexStatus]] = None,
) -> List[Resource]:
    """Order one level of siblings. No spec keeps the source order."""
    items = list(resources)
    if spec is None:
        return items

    def compare(a: Resource, b: Resource) -> int:
        # Directories lead when sizing, in either direction.
        if spec.key == SortKey.SIZE and a.is_directory != b.is_directory:
            return -1 if a.is_directory else 1

        va = _sort_value(a, spec.key, statuses)
        vb = _sort_value(b, spec.key, statuses)
        if va is None and vb is None:
            result = 0
        elif va is None:
            return 1
        elif vb is None:
            return -1
        else:
            result = _cmp(va, vb)

        if result == 0 and spec.key != SortKey.NAME:
            result = _cmp(a.name.lower(), b.name.lower())
        return -result if spec.descending else result

    return sorted(items, key=cmp_to_key(compare))


def project(
    root_children: Sequence[Resource],
    cache: ListingLookup,
    expanded: Set[str],
    sort: Optional[SortSpec] = None,
    statuses: Optional[Mapping[str, IndexStatus]] = None,
) -> List[TreeRow]:
    """Depth-first flattening of the visible tree.

    A directory contributes child rows only when it is expanded and its
    listing is cached; an expanded directory without a listing is loading.
    """
    rows: List[TreeRow] = []
    descended: Set[str] = set()
    stack = [(child, 0, None) for child in reversed(sort_siblings(root_children, sort, statuses))]

    while stack:
        resource, depth, parent_id = stack.pop()
        children = cache.get(resource.id) if resource.is_directory else None
        is_expanded = resource.is_directory and resource.id in expanded
        rows.append(
            TreeRow(
                resource=resource,
                depth=depth,
                parent_id=parent_id,
                is_expanded=is_expanded,
                children_loaded=children is not None,
            )
        )

        if is_expanded and children is not None and resource.id not in descended:
            descended.add(resource.id)
            ordered = sort_siblings(children, sort, statuses)
            stack.extend((child, depth + 1, resource.id) for child in reversed(ordered))

    return rows


def filter_rows(rows: Iterable[TreeRow], query: str) -> List[TreeRow]:
    """Case-insensitive substring match on the resource path."""
    needle = (query or "").strip().lower()
    if not needle:
        return list(rows)
    return [row for row in rows if needle in row.resource.path.lower()]
