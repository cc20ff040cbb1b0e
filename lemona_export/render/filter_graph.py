"""In-memory representation of an ffmpeg filter_complex program.

The compiler builds a FilterGraph out of labeled chains of Filter nodes and an
ordered list of InputSource entries. Serialization to ffmpeg syntax is a
separate step, so graph structure can be inspected and validated without
running the engine.

    graph = FilterGraph()
    graph.add(["0:v"], [Filter("trim", start="1.5", end="4"), Filter("setpts", "PTS-STARTPTS")], ["v0"])
    graph.serialize()
    # "[0:v]trim=start=1.5:end=4,setpts=PTS-STARTPTS[v0]"
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal

# Characters that must be quoted inside a filter argument
_SPECIAL_CHARS = re.compile(r"[,;\[\]'\\:\s]")
_STREAM_REF = re.compile(r"^(\d+):([va])$")


class FilterGraphError(ValueError):
    """The graph is structurally invalid (dangling or duplicated labels)."""


def format_seconds(ms: float) -> str:
    """Convert milliseconds to an exact decimal seconds string ("8", "0.5", "1.234")."""
    value = Decimal(str(ms)) / Decimal(1000)
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def format_number(value: float) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if float(value).is_integer():
        return str(int(value))
    return format(Decimal(repr(float(value))).normalize(), "f")


def escape_value(value: Any) -> str:
    """Render one filter argument, quoting it when it holds metacharacters."""
    if isinstance(value, (int, float)):
        return format_number(value)
    text = str(value)
    if not _SPECIAL_CHARS.search(text):
        return text
    # Option separators stay escaped after the graph parser strips the quotes
    text = text.replace("\\", "\\\\").replace(":", "\\:")
    return "'" + text.replace("'", "'\\''") + "'"


class Filter:
    """One filter node: a name plus positional and named arguments."""

    def __init__(self, name: str, *positional: Any, **options: Any):
        self.name = name
        self.positional = positional
        self.options = options

    def render(self) -> str:
        parts = [escape_value(v) for v in self.positional]
        parts += [f"{key}={escape_value(v)}" for key, v in self.options.items()]
        if not parts:
            return self.name
        return f"{self.name}=" + ":".join(parts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Filter):
            return NotImplemented
        return (self.name, self.positional, self.options) == (other.name, other.positional, other.options)

    def __repr__(self) -> str:
        return f"Filter({self.render()!r})"


@dataclass
class FilterChain:
    inputs: list[str]
    filters: list[Filter]
    outputs: list[str]

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{','.join(f.render() for f in self.filters)}{outs}"

    def filter_names(self) -> list[str]:
        return [f.name for f in self.filters]


@dataclass
class InputSource:
    """One ffmpeg input, with the options that must precede its -i."""

    path: str
    kind: Literal["file", "lavfi", "image_sequence"] = "file"
    options: list[str] = field(default_factory=list)

    @classmethod
    def file(cls, path: str) -> "InputSource":
        return cls(path=path)

    @classmethod
    def lavfi(cls, expression: str) -> "InputSource":
        return cls(path=expression, kind="lavfi", options=["-f", "lavfi"])

    @classmethod
    def image_sequence(cls, pattern: str, fps: int) -> "InputSource":
        return cls(
            path=pattern,
            kind="image_sequence",
            options=["-framerate", str(fps), "-start_number", "0", "-f", "image2"],
        )

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


class FilterGraph:
    """Labeled filter chains forming one filter_complex program."""

    def __init__(self) -> None:
        self.chains: list[FilterChain] = []
        self._label_counts: Counter[str] = Counter()

    def add(self, inputs: list[str], filters: list[Filter], outputs: list[str]) -> FilterChain:
        if not filters:
            raise FilterGraphError("a filter chain needs at least one filter")
        chain = FilterChain(list(inputs), list(filters), list(outputs))
        self.chains.append(chain)
        return chain

    def new_label(self, prefix: str) -> str:
        """Allocate a unique intermediate label such as "v3"."""
        index = self._label_counts[prefix]
        self._label_counts[prefix] += 1
        return f"{prefix}{index}"

    def producer_of(self, label: str) -> FilterChain | None:
        for chain in self.chains:
            if label in chain.outputs:
                return chain
        return None

    def consumers_of(self, label: str) -> list[FilterChain]:
        return [chain for chain in self.chains if label in chain.inputs]

    def relabel(self, old: str, new: str) -> None:
        """Rename a chain output (and every reference to it)."""
        if self.producer_of(old) is None:
            raise FilterGraphError(f"no chain produces [{old}]")
        for chain in self.chains:
            chain.outputs = [new if label == old else label for label in chain.outputs]
            chain.inputs = [new if label == old else label for label in chain.inputs]

    def filters_named(self, name: str) -> list[Filter]:
        return [f for chain in self.chains for f in chain.filters if f.name == name]

    def validate(self, input_count: int, outputs: list[str]) -> None:
        """Check every label is produced once and consumed once, except final outputs.

        Args:
            input_count: Number of ffmpeg inputs the graph may reference
            outputs: Labels mapped to the muxer (produced, never consumed)

        Raises:
            FilterGraphError: On dangling, duplicated or out-of-range labels
        """
        produced: Counter[str] = Counter()
        consumed: Counter[str] = Counter()
        for chain in self.chains:
            produced.update(chain.outputs)
            for label in chain.inputs:
                match = _STREAM_REF.match(label)
                if match:
                    if int(match.group(1)) >= input_count:
                        raise FilterGraphError(f"[{label}] references a missing input")
                    continue
                consumed[label] += 1

        for label, count in produced.items():
            if count > 1:
                raise FilterGraphError(f"[{label}] is produced {count} times")
        for label in outputs:
            if produced[label] != 1:
                raise FilterGraphError(f"output [{label}] is not produced")
            if consumed[label]:
                raise FilterGraphError(f"output [{label}] must not be consumed")
        for label, count in consumed.items():
            if label not in produced:
                raise FilterGraphError(f"[{label}] is consumed but never produced")
            if count > 1:
                raise FilterGraphError(f"[{label}] is consumed {count} times")
        for label in produced:
            if label not in outputs and not consumed[label]:
                raise FilterGraphError(f"[{label}] is produced but never used")

    def serialize(self) -> str:
        return ";\n".join(chain.render() for chain in self.chains)

    def __len__(self) -> int:
        return len(self.chains)
