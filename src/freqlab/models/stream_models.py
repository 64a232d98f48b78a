"""Stream multiplexing data models."""

from datetime import datetime

from pydantic import BaseModel, Field


class StreamLine(BaseModel):
    """A framed line read from a subprocess stream."""

    seq: int = Field(description="Monotonic across all sources of one multiplexer")
    source: str = Field(description="Stream name, e.g. stdout or stderr")
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)
