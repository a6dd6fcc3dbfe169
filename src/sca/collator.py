"""Merge per-node output streams into one chronological stream.

Every source is assumed to emit lines in non-decreasing time order, as a
tailed log does. The merge holds one pending record per source in a heap
and always emits the smallest, so output starts before the sources finish
and memory stays proportional to the number of sources.

Lines that carry no timestamp of their own (continuation lines of a
multi-line log message, for instance) take the last timestamp seen from
the same source. Lines that arrive before a source has shown any
timestamp cannot be placed and are emitted after everything else.
"""

from __future__ import annotations

import heapq
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Mapping

from .executor import OutputLine

logger = logging.getLogger(__name__)

# Positional match only; calendar and clock ranges are not checked.
TIMESTAMP_RE = re.compile(
    r"^(?P<date>\S{4}-\S{2}-\S{2})[T\s]+"
    r"(?P<time>\S{2}:\S{2}:\S{2}(?:[.,]\d+)?)"
    r"(?P<rest>.*)$"
)

UNDATED = "---------- --:--:--"


def parse_timestamp(text: str) -> tuple[str, str] | None:
    """Split a leading ``date time`` pair off a line.

    Returns ``(timestamp, rest)`` with the timestamp normalized to
    ``YYYY-MM-DD HH:MM:SS[.fraction]``, or None when the line does not
    start with one.
    """
    match = TIMESTAMP_RE.match(text)
    if not match:
        return None
    time = match.group("time").replace(",", ".")
    return f"{match.group('date')} {time}", match.group("rest").lstrip()


@dataclass
class TimestampContext:
    """Last timestamp seen from one source."""

    node: str
    last_seen: str | None = None


@dataclass(frozen=True)
class CollatedRecord:
    """A line placed in time. ``timestamp`` is None when undefined."""

    timestamp: str | None
    node: str
    text: str
    seq: int = 0

    def format(self, ident_width: int = 0) -> str:
        timestamp = self.timestamp if self.timestamp is not None else UNDATED
        line = f"{timestamp} {self.node.ljust(ident_width)}"
        if self.text:
            line = f"{line} {self.text}"
        return line

    def __str__(self) -> str:
        return self.format()


class Collator:
    """Stamps lines with their source's time and merges the sources."""

    def __init__(self):
        self.contexts: dict[str, TimestampContext] = {}

    def stamp(self, line: OutputLine) -> CollatedRecord:
        """Place one line in time, updating its source's context."""
        context = self.contexts.get(line.node)
        if context is None:
            context = self.contexts[line.node] = TimestampContext(line.node)

        parsed = parse_timestamp(line.text)
        if parsed is not None:
            context.last_seen, text = parsed
            return CollatedRecord(context.last_seen, line.node, text, line.seq)

        return CollatedRecord(context.last_seen, line.node, line.text, line.seq)

    async def merge(
        self, sources: Mapping[str, AsyncIterator[OutputLine]]
    ) -> AsyncIterator[CollatedRecord]:
        """k-way merge of per-source line streams into time order.

        Equal timestamps keep source order and then sort by source name.
        """
        iterators = dict(sources)
        heap: list[tuple[str, str, int, str, CollatedRecord]] = []
        undated: dict[str, list[CollatedRecord]] = {}

        async def advance(name: str) -> None:
            # Pull until one dated record is pending for name, or it ends
            while True:
                try:
                    line = await iterators[name].__anext__()
                except StopAsyncIteration:
                    logger.debug("%s: source exhausted", name)
                    del iterators[name]
                    return
                if line.is_header:
                    continue
                record = self.stamp(line)
                if record.timestamp is None:
                    undated.setdefault(name, []).append(record)
                    continue
                heapq.heappush(
                    heap, (record.timestamp, record.node, record.seq, name, record)
                )
                return

        for name in list(iterators):
            await advance(name)

        while heap:
            *_, name, record = heapq.heappop(heap)
            yield record
            if name in iterators:
                await advance(name)

        for name in sorted(undated):
            for record in undated[name]:
                yield record
