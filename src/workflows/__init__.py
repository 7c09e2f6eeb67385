"""
Workflows module - Stage contract and orchestration of the live feed pipeline.
The orchestrator lives in workflows.orchestrator; processing stages import
this package, so it only exposes the stage base classes.
"""
from workflows.base import PipelineStage, StageContext

__all__ = [
    "PipelineStage",
    "StageContext",
]
