"""
Render Statistics

Counters and timings collected while rendering. Each region accumulates into
its own RunStatistics, which the orchestrator merges into the run totals once
the region is done, so worker threads never share a mutable counter.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List


def format_elapsed(seconds: float) -> str:
    if seconds < 1.0:
        return f"{seconds * 1000.0:.1f} ms"
    if seconds < 60.0:
        return f"{seconds:.2f} sec."
    minutes, rest = divmod(seconds, 60.0)
    return f"{int(minutes)} min. {rest:.1f} sec."


@dataclass
class LayerStatistics:
    """Counters and timings of one layer."""
    name: str
    db_rows: int = 0
    points: int = 0
    strokes: int = 0
    fills: int = 0
    texts: int = 0
    skipped_by_script: int = 0
    out_of_range: int = 0
    rendering_calls: int = 0
    data_access_time: float = 0.0
    script_preparation_time: float = 0.0
    script_exec_time: float = 0.0
    parse_time: float = 0.0
    projection_time: float = 0.0
    render_time: float = 0.0
    errors: Counter = field(default_factory=Counter)

    _COUNTERS = (
        "db_rows", "points", "strokes", "fills", "texts", "skipped_by_script",
        "out_of_range", "rendering_calls", "data_access_time",
        "script_preparation_time", "script_exec_time", "parse_time",
        "projection_time", "render_time",
    )

    def record_error(self, category: str) -> None:
        self.errors[category] += 1

    def error_count(self, category: str) -> int:
        return self.errors.get(category, 0)

    def merge(self, other: "LayerStatistics") -> None:
        for name in self._COUNTERS:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.errors.update(other.errors)

    def to_dict(self) -> Dict:
        data = {name: getattr(self, name) for name in self._COUNTERS}
        data["name"] = self.name
        data["errors"] = dict(self.errors)
        return data


@dataclass
class RunStatistics:
    """Run totals plus per-layer statistics, keyed by layer name."""
    meta_tiles: int = 0
    tiles: int = 0
    regions: int = 0
    failed_regions: int = 0
    render_time: float = 0.0
    layers: Dict[str, LayerStatistics] = field(default_factory=dict)
    layer_order: List[str] = field(default_factory=list)

    def layer(self, name: str) -> LayerStatistics:
        stats = self.layers.get(name)
        if stats is None:
            stats = LayerStatistics(name=name)
            self.layers[name] = stats
            self.layer_order.append(name)
        return stats

    def _total(self, attribute: str) -> int:
        return sum(getattr(stats, attribute) for stats in self.layers.values())

    @property
    def db_rows(self) -> int:
        return self._total("db_rows")

    @property
    def points(self) -> int:
        return self._total("points")

    @property
    def strokes(self) -> int:
        return self._total("strokes")

    @property
    def fills(self) -> int:
        return self._total("fills")

    @property
    def texts(self) -> int:
        return self._total("texts")

    def error_count(self, category: str) -> int:
        return sum(stats.error_count(category) for stats in self.layers.values())

    def merge(self, other: "RunStatistics") -> None:
        self.meta_tiles += other.meta_tiles
        self.tiles += other.tiles
        self.regions += other.regions
        self.failed_regions += other.failed_regions
        for name in other.layer_order:
            self.layer(name).merge(other.layers[name])

    def to_dict(self) -> Dict:
        return {
            'render_time': self.render_time,
            'regions': self.regions,
            'failed_regions': self.failed_regions,
            'meta_tiles': self.meta_tiles,
            'tiles': self.tiles,
            'db_rows': self.db_rows,
            'points': self.points,
            'strokes': self.strokes,
            'fills': self.fills,
            'texts': self.texts,
            'layers': [self.layers[name].to_dict() for name in self.layer_order],
        }

    def report(self, render_mode: str) -> str:
        """Human-readable summary of the run."""
        lines = [
            "***** Render statistics *****",
            f"render mode: {render_mode}",
            f"total render time: {format_elapsed(self.render_time)}",
            f"database rows queried: {self.db_rows}",
            "rendered elements:",
            f"  points: {self.points}",
            f"  strokes: {self.strokes}",
            f"  fills: {self.fills}",
            f"  texts: {self.texts}",
        ]
        if render_mode in ("tiles", "meta-tiles"):
            lines.append(f"total meta tiles: {self.meta_tiles}")
            lines.append(f"total tiles: {self.tiles}")
        if self.failed_regions:
            lines.append(f"failed regions: {self.failed_regions}")

        lines.append("layers:")
        for index, name in enumerate(self.layer_order):
            stats = self.layers[name]
            script_time = stats.script_preparation_time + stats.script_exec_time
            line = (
                f"{index}: {name}, access: {format_elapsed(stats.data_access_time)}"
                f", script: {format_elapsed(script_time)}"
                f", render: {format_elapsed(stats.render_time)}"
            )
            if stats.out_of_range:
                line += f", out of range: {stats.out_of_range}"
            if stats.skipped_by_script:
                line += f", skipped by script: {stats.skipped_by_script}"
            if stats.errors:
                errors = ", ".join(f"{category}={count}" for category, count in sorted(stats.errors.items()))
                line += f", errors: {errors}"
            lines.append(line)

        return "\n".join(lines)
