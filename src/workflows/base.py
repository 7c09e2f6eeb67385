"""
Contains base class for pipeline stages
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from core.entities import Item, ProcessingStatus


@dataclass(frozen=True)
class StageContext:
    """
    What a stage may read besides its input items.
    now is epoch seconds.
    """
    now: float
    recently_published: List[Item] = field(default_factory=list)


class PipelineStage(ABC):
    """
    One batch transform of the pipeline: takes every item waiting at
    input_status and returns those it advanced to output_status.
    """

    name: str
    input_status: ProcessingStatus
    output_status: ProcessingStatus

    @abstractmethod
    def run(self, items: List[Item], context: StageContext) -> List[Item]:
        """
        Process a batch. Items left out of the result stay where they are.
        May raise; the orchestrator marks the stage unhealthy and retries next tick.
        """
        raise NotImplementedError

    def metrics_for(self, item: Item, context: StageContext) -> dict:
        """Numbers recorded to the store for each advanced item."""
        return {}
