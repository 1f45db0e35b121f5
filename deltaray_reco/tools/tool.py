from __future__ import annotations

import abc
import logging
from enum import Enum
from typing import TYPE_CHECKING, Iterator, List, Optional, Set

from ..overlap_tensor import Element, OverlapTensor

if TYPE_CHECKING:
    from ..matching import DeltaRayMatchingAlgorithm

__all__ = ["ToolKind", "TensorTool"]


class ToolKind(Enum):
    """Closed set of tensor-tool strategies."""
    REMOVAL = "removal"
    MERGE_TWO_VIEW = "merge_two_view"
    MERGE_ONE_VIEW = "merge_one_view"
    SELECTION = "selection"


class TensorTool(abc.ABC):
    r"""
    Strategy that inspects the overlap tensor and may mutate the event.

    A tool is bound to one :class:`~deltaray_reco.matching.DeltaRayMatchingAlgorithm`
    through :meth:`attach`; the algorithm gives it access to the event store,
    the geometry, the muon lookups and the update hooks. :meth:`apply` must
    return ``True`` exactly when the event or the tensor changed, which makes
    the algorithm restart its tool chain.
    """

    kind: ToolKind

    __slots__ = ("algorithm", "log")

    def __init__(self) -> None:
        self.algorithm: Optional["DeltaRayMatchingAlgorithm"] = None
        self.log = logging.getLogger(self.__class__.__name__)

    def attach(self, algorithm: "DeltaRayMatchingAlgorithm") -> None:
        self.algorithm = algorithm

    @property
    def store(self):
        return self.algorithm.store

    @abc.abstractmethod
    def apply(self, tensor: OverlapTensor) -> bool:
        """Run one pass over ``tensor``; return whether anything changed."""

    def connected_element_groups(self, ignore_unavailable: bool = True) -> Iterator[List[Element]]:
        r"""
        Connected components of the tensor, one per key cluster.

        Key clusters are taken in the algorithm's deterministic order and a
        single ``checked`` set is threaded through the sweep so that each
        component is produced once. The generator reads the live tensor, so
        callers that mutate it should stop iterating and start a new sweep.
        """
        checked: Set[int] = set()
        for key in self.algorithm.get_sorted_key_clusters():
            elements = self.algorithm.get_connected_elements(key, ignore_unavailable, checked)
            if elements:
                yield elements
