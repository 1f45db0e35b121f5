__all__ = [
    "ToolKind", "TensorTool",
    "CosmicRayRemovalTool", "DeltaRayMergeTool", "TwoViewMergeTool", "OneViewMergeTool",
    "GoodMatchSelectionTool", "TOOL_MAP", "build_tools",
]

from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from .tool import ToolKind, TensorTool
from .removal import CosmicRayRemovalTool
from .merge import DeltaRayMergeTool, TwoViewMergeTool, OneViewMergeTool
from .selection import GoodMatchSelectionTool

# Tool registry keyed by config name
TOOL_MAP: Dict[str, Type[TensorTool]] = {
    ToolKind.REMOVAL.value: CosmicRayRemovalTool,
    ToolKind.MERGE_TWO_VIEW.value: TwoViewMergeTool,
    ToolKind.MERGE_ONE_VIEW.value: OneViewMergeTool,
    ToolKind.SELECTION.value: GoodMatchSelectionTool,
}

DEFAULT_TOOL_ORDER = [k.value for k in ToolKind]


def build_tools(order: Optional[Sequence[str]] = None, settings: Optional[Mapping[str, Any]] = None) -> List[TensorTool]:
    r"""
    Instantiate tools in ``order`` with per-tool keyword settings.

    Raises
    ------
    KeyError
        If a name is not a key of :data:`TOOL_MAP`.
    """
    settings = settings or {}
    tools = []
    for name in order or DEFAULT_TOOL_ORDER:
        if name not in TOOL_MAP:
            raise KeyError(f"Unknown tool '{name}'. Available: {', '.join(TOOL_MAP)}")
        tools.append(TOOL_MAP[name](**(settings.get(name) or {})))
    return tools
