"""
Join resolution: planner, filter injection and search request rewriting.
"""

from fedjoin.join.injector import FilterInjector
from fedjoin.join.planner import (
    FailurePolicy,
    JoinPlanner,
    JoinRelation,
    JoinStep,
    ReductionMode,
    SetOperation,
)
from fedjoin.join.sort import normalize_sort
from fedjoin.join.transforms import SearchRequestTransformer

__all__ = [
    "FailurePolicy",
    "FilterInjector",
    "JoinPlanner",
    "JoinRelation",
    "JoinStep",
    "ReductionMode",
    "SearchRequestTransformer",
    "SetOperation",
    "normalize_sort",
]
