from __future__ import annotations

from typing import List, Sequence, Set

from ..objects import ProtoParticle
from ..overlap_tensor import Element, OverlapTensor
from .tool import TensorTool, ToolKind

__all__ = ["GoodMatchSelectionTool"]


class GoodMatchSelectionTool(TensorTool):
    r"""
    Turn unambiguous three-view matches into delta-ray pfos.

    Within each connected group, elements with a reduced :math:`\chi^2` of at
    most ``max_good_match_reduced_chi2`` are taken greedily by total hit count
    (descending) then reduced :math:`\chi^2` (ascending); an element is only
    taken if none of its clusters was used by an earlier pick. The parent of
    each proto particle is the element's first common muon pfo.
    """

    kind = ToolKind.SELECTION

    def __init__(self, max_good_match_reduced_chi2: float = 1.0) -> None:
        super().__init__()
        self.max_good_match_reduced_chi2 = float(max_good_match_reduced_chi2)

    def apply(self, tensor: OverlapTensor) -> bool:
        changed = False
        while True:
            created = False
            for elements in self.connected_element_groups():
                if self.pick_out_good_matches(elements):
                    created = True
                    break
            if not created:
                return changed
            changed = True

    def pick_out_good_matches(self, elements: Sequence[Element]) -> bool:
        def hit_sum(e: Element) -> int:
            return sum(self.store.cluster(c).n_hits for c in e.clusters)

        ranked = sorted(
            (e for e in elements if e.overlap_result.reduced_chi2 <= self.max_good_match_reduced_chi2),
            key=lambda e: (-hit_sum(e), e.overlap_result.reduced_chi2, e.key),
        )
        used: Set[int] = set()
        protos: List[ProtoParticle] = []
        for e in ranked:
            if any(c in used for c in e.clusters):
                continue
            if not all(self.store.is_available(c) for c in e.clusters):
                continue
            used.update(e.clusters)
            parent = e.common_muon_pfos[0] if e.common_muon_pfos else None
            protos.append(ProtoParticle(clusters=e.clusters, parent_pfo=parent))
        if not protos:
            return False
        return self.algorithm.create_pfos(protos)
