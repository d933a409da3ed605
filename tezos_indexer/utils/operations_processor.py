from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from tezos_indexer.utils.context import Context

@dataclass
class ProcessingResult:
    start_level: Optional[int]
    end_level: Optional[int]
    num_of_operations: int
    inserted: int
    updated: int
    processing_duration_in_secs: float
    db_insertion_duration_in_secs: float


class OperationsProcessor(ABC):
    # Name of the processor for status logging
    @abstractmethod
    def name(self) -> str:
        pass

    # Name of the DB schema this processor writes to
    @abstractmethod
    def schema(self) -> str:
        pass

    # Converts one batch of source operations and persists it together with the
    # cursor. Either the whole batch is stored or the call raises.
    @abstractmethod
    def process_operations(
        self,
        ctx: Context,
        operations: Sequence[Any],
    ) -> ProcessingResult:
        pass
