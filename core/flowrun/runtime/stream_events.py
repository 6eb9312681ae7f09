"""Output event types for a run's response stream.

Executors emit node-tagged chunks while they run; the scheduler stamps
each chunk with a run-wide sequence number and hands it to the stream
aggregator, which decides what reaches RunHandle.events().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

OutputKind = Literal["token", "final"]


@dataclass(frozen=True)
class OutputEvent:
    """A chunk of output produced by a node.

    ``kind="token"`` is a streamed partial (model tokens); ``kind="final"``
    is the finalization marker an answer node emits with its full answer.
    """

    node_id: str
    scope_id: str
    sequence: int  # run-wide, assigned in emission order
    content: str = ""
    kind: OutputKind = "token"

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "scope_id": self.scope_id,
            "sequence": self.sequence,
            "content": self.content,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class Reclassify:
    """Control marker: node statuses changed, re-check buffered nodes."""

    type: Literal["reclassify"] = "reclassify"


@dataclass(frozen=True)
class StreamEnd:
    """Control marker: the run is over, flush or drop what is left."""

    type: Literal["end"] = "end"


StreamItem = OutputEvent | Reclassify | StreamEnd
