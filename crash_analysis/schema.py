"""Occurrence payload models"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .models import (
    Occurrence,
    ObfuscatedFrame,
    ReturnAddressFrame,
    SourceFrame,
    Thread,
    OBFUSCATED_MARKER,
    RETURN_ADDRESS_SENTINEL,
    utcnow,
)


class SourceFramePayload(BaseModel):
    """A symbolicated frame."""
    type: Literal["source"] = "source"
    file: str
    line: int
    symbol: Optional[str] = None

    def to_frame(self) -> SourceFrame:
        return SourceFrame(self.file, self.line, self.symbol)


class ReturnAddressFramePayload(BaseModel):
    """An unsymbolicated return address."""
    type: Literal["address"] = "address"
    offset: int

    def to_frame(self) -> ReturnAddressFrame:
        return ReturnAddressFrame(self.offset)


class ObfuscatedFramePayload(BaseModel):
    """A frame decoded from an obfuscated trace."""
    type: Literal["obfuscated"] = "obfuscated"
    file: str
    line: int
    symbol: Optional[str] = None
    class_name: Optional[str] = None

    def to_frame(self) -> ObfuscatedFrame:
        return ObfuscatedFrame(self.file, self.line, self.symbol, self.class_name)


FramePayload = Annotated[
    Union[SourceFramePayload, ReturnAddressFramePayload, ObfuscatedFramePayload],
    Field(discriminator="type"),
]


def _frame_from_wire(value):
    """Accept the compact array forms as well as objects."""
    if isinstance(value, (list, tuple)):
        if value and value[0] == RETURN_ADDRESS_SENTINEL:
            if len(value) != 2:
                raise ValueError(f"return address frame must be [sentinel, offset], got {value!r}")
            return {"type": "address", "offset": value[1]}
        if value and value[0] == OBFUSCATED_MARKER:
            if not 3 <= len(value) <= 5:
                raise ValueError(f"obfuscated frame must be [marker, file, line, symbol?, class?], got {value!r}")
            keys = ("file", "line", "symbol", "class_name")
            return {"type": "obfuscated", **dict(zip(keys, value[1:]))}
        if not 2 <= len(value) <= 3:
            raise ValueError(f"frame must be [file, line, symbol?], got {value!r}")
        return {"type": "source", **dict(zip(("file", "line", "symbol"), value))}
    if isinstance(value, dict) and "type" not in value:
        return {"type": "source", **value}
    return value


def _thread_from_wire(value):
    if isinstance(value, (list, tuple)):
        if len(value) != 3:
            raise ValueError(f"thread must be [name, faulting, frames], got {value!r}")
        return {"name": value[0], "faulting": value[1], "frames": value[2]}
    return value


class ThreadPayload(BaseModel):
    name: str = "Thread 0"
    faulting: bool = False
    frames: List[FramePayload] = Field(default_factory=list)

    @field_validator("frames", mode="before")
    @classmethod
    def normalize_frames(cls, value):
        if isinstance(value, list):
            return [_frame_from_wire(frame) for frame in value]
        return value

    def to_thread(self) -> Thread:
        return Thread(self.name, self.faulting, [frame.to_frame() for frame in self.frames])


class OccurrencePayload(BaseModel):
    """Model for an incoming occurrence."""
    class_name: str = Field(..., min_length=1, description="Exception class name")
    message: Optional[str] = Field(None, description="Raw exception message")
    revision: str = Field(..., min_length=1, description="Revision of the code that raised")
    environment: str = Field("production", description="Environment name")
    occurred_at: Optional[datetime] = None
    threads: List[ThreadPayload] = Field(default_factory=list)

    @field_validator("threads", mode="before")
    @classmethod
    def normalize_threads(cls, value):
        # ["Thread 0", true, [frames...]]
        if isinstance(value, list):
            return [_thread_from_wire(t) for t in value]
        return value

    def to_occurrence(self, environment_id: int) -> Occurrence:
        return Occurrence(
            class_name=self.class_name,
            revision=self.revision,
            environment_id=environment_id,
            threads=[thread.to_thread() for thread in self.threads],
            message=self.message,
            occurred_at=self.occurred_at or utcnow(),
        )
