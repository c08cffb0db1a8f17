"""
Output routing.
===============
Decides how a step or plugin result lands in the row (merge / column / ignore)
and whether the row fans out (explode) or is dropped.
"""
from typing import Any, Dict, List, Optional

from ..domain import OutputStrategy, PluginPacket, WorkUnit
from ..errors import ConfigurationError

VALID_MODES = ("merge", "column", "ignore")


def resolve_output_strategy(step: Optional[Dict[str, Any]] = None,
                            category: Optional[Dict[str, Any]] = None,
                            master: Optional[Dict[str, Any]] = None) -> OutputStrategy:
    """
    Field-wise resolution over three explicit levels: for each field the most
    specific level that sets it wins (step > category > master).
    """
    levels = [level or {} for level in (step, category, master)]

    def _pick(key):
        for level in levels:
            if level.get(key) is not None:
                return level[key]
        return None

    mode = _pick("mode") or "ignore"
    if mode not in VALID_MODES:
        raise ConfigurationError(f"Unknown output mode '{mode}' (expected one of {VALID_MODES})")
    column = _pick("column")
    if mode == "column" and not column:
        raise ConfigurationError("Output mode 'column' requires a column name")
    limit, offset = _pick("limit"), _pick("offset")
    for name, value in (("limit", limit), ("offset", offset)):
        if value is not None and (not isinstance(value, int) or value < 0):
            raise ConfigurationError(f"Output {name} must be a non-negative integer, got {value!r}")
    return OutputStrategy(
        mode=mode,
        column=column,
        explode=bool(_pick("explode")),
        limit=limit,
        offset=offset,
    )


class OutputRouter:
    """Applies a resolved OutputStrategy to one unit and returns its descendants."""

    def route_packets(self, unit: WorkUnit, packets: List[PluginPacket],
                      strategy: OutputStrategy, source: str) -> List[WorkUnit]:
        """
        Routes plugin packets. Zero packets drops the unit; explode yields one
        descendant per packet, otherwise a single descendant sees every packet.
        Packet content is queued on the descendants, never merged into the row.
        """
        packets = self._window(packets, strategy)
        if not packets:
            return []

        if strategy.explode:
            descendants = []
            for i, packet in enumerate(packets):
                child = unit.spawn(variation=i)
                self._assign(child.row, packet.data, strategy, source)
                child.pending_content.extend(packet.content_parts)
                descendants.append(child)
            return descendants

        child = unit.spawn()
        data = [packet.data for packet in packets]
        self._assign(child.row, data[0] if len(data) == 1 else data, strategy, source)
        for packet in packets:
            child.pending_content.extend(packet.content_parts)
        return [child]

    def route_value(self, unit: WorkUnit, value: Any,
                    strategy: OutputStrategy, source: str) -> List[WorkUnit]:
        """Routes a model result; explode requires an array."""
        if strategy.explode:
            if not isinstance(value, list):
                raise ConfigurationError(
                    f"{source}: explode requires an array result, got {type(value).__name__}"
                )
            descendants = []
            for i, item in enumerate(self._window(value, strategy)):
                child = unit.spawn(variation=i)
                self._assign(child.row, item, strategy, source)
                descendants.append(child)
            return descendants

        if isinstance(value, list):
            value = self._window(value, strategy)
        child = unit.spawn()
        self._assign(child.row, value, strategy, source)
        return [child]

    @staticmethod
    def _window(items: List[Any], strategy: OutputStrategy) -> List[Any]:
        start = strategy.offset or 0
        end = start + strategy.limit if strategy.limit is not None else None
        return items[start:end]

    @staticmethod
    def _assign(row: Dict[str, Any], value: Any, strategy: OutputStrategy, source: str):
        if strategy.mode == "ignore":
            return
        if strategy.mode == "column":
            row[strategy.column] = value
            return
        # merge: last write wins
        if value is None:
            return
        objects = value if isinstance(value, list) else [value]
        for obj in objects:
            if obj is None:
                continue
            if not isinstance(obj, dict):
                raise ConfigurationError(
                    f"{source}: merge requires an object result, got {type(obj).__name__}"
                )
            row.update(obj)
