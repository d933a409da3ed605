from enum import Enum


class ProcessorName(Enum):
    TEZOS_DELEGATION_PROCESSOR = "tezos_delegation_processor"
