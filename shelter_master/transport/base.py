"""
Transport boundary: execute one transaction, get a result or a typed failure.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from shelter_master.mapping.models import CommandIntent, TransactionDescriptor


@dataclass
class TransactionResult:
    success: bool
    data: List[int] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def ok(cls, data=None) -> "TransactionResult":
        return cls(success=True, data=list(data or []))

    @classmethod
    def failed(cls, error: str) -> "TransactionResult":
        return cls(success=False, error=error)


class Transport(ABC):
    """
    A single shared, non-reentrant link to the DDC.

    Only the command queue calls execute(); it never has more than one
    call outstanding.
    """

    name = "transport"

    @abstractmethod
    async def connect(self) -> bool:
        ...

    @abstractmethod
    async def disconnect(self):
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def execute(self, descriptor: TransactionDescriptor, intent: CommandIntent,
                      value: Optional[int] = None) -> TransactionResult:
        """
        Execute one transaction.

        Args:
            descriptor: Function code, address and length
            intent: READ or WRITE
            value: Word to write (writes only)

        Raises:
            UnsupportedFunctionCodeError: function code outside the read/write sets
            NoConnectionError: the link is down and could not be re-established
        """
