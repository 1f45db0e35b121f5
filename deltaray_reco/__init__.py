__all__ = [
    "ReconstructionError", "TransactionError", "InvalidParameterError",
    "View", "VIEWS", "Hit", "Cluster", "Pfo", "ProtoParticle",
    "EventStore", "Fragmentation", "cluster_list_name", "hit_list_name",
    "TPCVolume", "DetectorGeometry",
    "TwoDSlidingFitResult", "LayerFitResult",
    "ProximityClusteringAlgorithm", "CLUSTERING_MAP", "build_clustering_algorithms",
    "XOverlap", "OverlapResult", "Element", "OverlapTensor",
    "DeltaRayMatchingAlgorithm",
    "TensorTool", "ToolKind", "CosmicRayRemovalTool", "TwoViewMergeTool",
    "OneViewMergeTool", "GoodMatchSelectionTool", "TOOL_MAP", "build_tools",
    "ClusterAssociation", "ClusterEndpointAssociation", "TrackRefinementBase",
    "TrackExtensionRefinementAlgorithm",
    "build_event_store", "iter_events", "partition_frame", "read_hits", "read_pfos", "write_partition",
    "run_event",
]

# Errors
from .exceptions import ReconstructionError, TransactionError, InvalidParameterError

# Event model & object store
from .objects import View, VIEWS, Hit, Cluster, Pfo, ProtoParticle
from .event_store import EventStore, Fragmentation, cluster_list_name, hit_list_name

# Geometry services
from .geometry import TPCVolume, DetectorGeometry
from .sliding_fit import TwoDSlidingFitResult, LayerFitResult

# Reclustering
from .clustering import ProximityClusteringAlgorithm, CLUSTERING_MAP, build_clustering_algorithms

# Delta-ray matching & tensor tools
from .overlap_tensor import XOverlap, OverlapResult, Element, OverlapTensor
from .matching import DeltaRayMatchingAlgorithm
from .tools import (
    TensorTool,
    ToolKind,
    CosmicRayRemovalTool,
    TwoViewMergeTool,
    OneViewMergeTool,
    GoodMatchSelectionTool,
    TOOL_MAP,
    build_tools,
)

# Track refinement
from .refinement import ClusterAssociation, ClusterEndpointAssociation, TrackRefinementBase
from .track_extension import TrackExtensionRefinementAlgorithm

# Event I/O & driver
from .data import build_event_store, iter_events, partition_frame, read_hits, read_pfos, write_partition
from .reco_chain import run_event
