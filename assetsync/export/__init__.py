"""Local export of models, materials and textures to the server layout."""

from .materials import build_material_json, write_material_json
from .options import (
    DEFAULT_MASTER_MATERIAL,
    ExportOptions,
    MasterMaterial,
    MasterMaterialsConfig,
)
from .orchestrator import (
    ExportOrchestrator,
    ExportPlan,
    ExportProgress,
    ExportProgressCallback,
    ExportSummary,
    plan_export,
)
from .pipeline import ExportResult, ModelExportPipeline
from .tools import (
    ExportTools,
    ModelConverter,
    PackingMode,
    TextureConverter,
    TexturePacker,
    ToolResult,
    ToolRunner,
    determine_packing_mode,
)

__all__ = [
    "ExportOrchestrator",
    "ExportPlan",
    "ExportProgress",
    "ExportProgressCallback",
    "ExportSummary",
    "plan_export",
    "ExportResult",
    "ModelExportPipeline",
    "ExportOptions",
    "MasterMaterial",
    "MasterMaterialsConfig",
    "DEFAULT_MASTER_MATERIAL",
    "ExportTools",
    "ModelConverter",
    "TextureConverter",
    "TexturePacker",
    "ToolRunner",
    "ToolResult",
    "PackingMode",
    "determine_packing_mode",
    "build_material_json",
    "write_material_json",
]
