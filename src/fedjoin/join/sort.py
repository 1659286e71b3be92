"""
Sort clause normalization for search bodies.
"""

from typing import Any, Dict, List, Mapping, Optional, Union

SortSpec = Union[str, Dict[str, Any], List[Any]]


def normalize_sort(
    sort: SortSpec,
    field_types: Mapping[str, str],
    defaults: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Rewrite a sort specification into its verbose list form.

    ``{"price": "desc"}`` becomes ``[{"price": {"order": "desc"}}]``.
    Defaults are merged under explicit options, and ``unmapped_type`` is set
    from ``field_types`` so that indices missing the field do not fail.

    Args:
        sort: A field name, a sort dict, or a list of either
        field_types: Known field name to mapping type
        defaults: Default sort options, e.g. ``{"unmapped_type": "boolean"}``

    Returns:
        List of single-key sort dicts
    """
    items = sort if isinstance(sort, list) else [sort]
    return [_normalize_one(item, field_types, defaults or {}) for item in items]


def _normalize_one(
    sortable: Union[str, Dict[str, Any]],
    field_types: Mapping[str, str],
    defaults: Mapping[str, Any],
) -> Dict[str, Any]:
    if isinstance(sortable, str):
        sortable = {sortable: {}}
    field_name, value = next(iter(sortable.items()))

    # _score, _doc and friends keep their meaning untouched
    if field_name.startswith("_"):
        return {field_name: value}

    if isinstance(value, str):
        value = {"order": value}
    options = dict(defaults)
    options.update(value or {})

    field_type = field_types.get(field_name)
    if field_type == "text":
        # analyzed text cannot be sorted on, use its keyword subfield if mapped
        keyword = f"{field_name}.keyword"
        if field_types.get(keyword) == "keyword":
            field_name, field_type = keyword, "keyword"
    if field_type and field_type != "conflict":
        options["unmapped_type"] = field_type
    return {field_name: options}
