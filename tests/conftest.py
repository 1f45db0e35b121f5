import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from typing import Callable, Dict, Iterable, List, Sequence, Tuple

import pytest

from deltaray_reco.clustering import ProximityClusteringAlgorithm
from deltaray_reco.event_store import EventStore, cluster_list_name
from deltaray_reco.geometry import DetectorGeometry
from deltaray_reco.objects import Hit, View, VIEWS


class EventBuilder:
    """Synthesizes hits, clusters and muon pfos in a fresh event store."""

    def __init__(self, geometry: DetectorGeometry) -> None:
        self.geometry = geometry
        self.store = EventStore({"proximity": ProximityClusteringAlgorithm()})
        self._next_hit_id = 0

    def hits(self, view: View, points: Iterable[Tuple[float, float]], **kwargs) -> List[Hit]:
        out = []
        for x, z in points:
            out.append(Hit(self._next_hit_id, view, float(x), float(z), **kwargs))
            self._next_hit_id += 1
        self.store.add_hits(out)
        return out

    def cluster(self, view: View, points: Iterable[Tuple[float, float]]) -> int:
        hits = self.hits(view, points)
        self.store.replace_current_list(cluster_list_name(view))
        return self.store.create_cluster(hits)

    def line3d(
        self,
        xs: Sequence[float],
        y_of_x: Callable[[float], float],
        z_of_x: Callable[[float], float],
    ) -> Dict[View, int]:
        """One cluster per view for the 3D line ``(x, y(x), z(x))``."""
        return {
            view: self.cluster(view, [(x, self.geometry.project(view, y_of_x(x), z_of_x(x))) for x in xs])
            for view in VIEWS
        }

    def muon(self, clusters: Dict[View, int]) -> int:
        return self.store.create_pfo(list(clusters.values()), "MuonPfos", 13)


@pytest.fixture
def geometry():
    return DetectorGeometry()


@pytest.fixture
def builder(geometry):
    return EventBuilder(geometry)
