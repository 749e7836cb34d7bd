"""Task input bindings.

A string value starting with ``$`` is a reference into the run state:

* ``$params.<path>`` reads a pipeline parameter;
* ``$phases.<phase>[.<path>]`` reads a prior phase (or loop) output;
* ``$loop.iteration`` / ``$loop.feedback`` read the enclosing loop frame.

A trailing ``?`` makes the reference optional, resolving to ``None`` when the
target is absent. Anything else is a literal; mappings and lists are resolved
recursively.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from pipewright.errors import MissingInput
from pipewright.paths import resolve_path, split_path

REFERENCE_ROOTS = {"params", "phases", "loop"}
LOOP_FIELDS = {"iteration", "feedback"}


@dataclass(frozen=True, slots=True)
class Reference:
    text: str
    root: str
    segments: tuple[str, ...]
    optional: bool = False


@dataclass(frozen=True, slots=True)
class LoopFrame:
    loop: str
    iteration: int
    feedback: Any = None


def is_reference(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("$") and len(value) > 1


def parse_reference(text: str) -> Reference:
    body = text[1:]
    optional = body.endswith("?")
    if optional:
        body = body[:-1]
    segments = split_path(body)
    if not segments or segments[0] not in REFERENCE_ROOTS:
        raise ValueError(
            f"Reference '{text}' must start with one of: "
            + ", ".join(f"${root}" for root in sorted(REFERENCE_ROOTS))
        )
    if segments[0] in {"phases", "loop"} and len(segments) < 2:
        raise ValueError(f"Reference '{text}' must name a {segments[0]} entry.")
    if segments[0] == "loop" and segments[1] not in LOOP_FIELDS:
        raise ValueError(
            f"Reference '{text}' must be one of $loop.iteration or $loop.feedback."
        )
    return Reference(text=text, root=segments[0], segments=tuple(segments[1:]), optional=optional)


def iter_references(template: Any) -> Iterator[str]:
    if is_reference(template):
        yield template
    elif isinstance(template, Mapping):
        for value in template.values():
            yield from iter_references(value)
    elif isinstance(template, (list, tuple)):
        for value in template:
            yield from iter_references(value)


def _lookup(
    reference: Reference,
    *,
    params: Mapping[str, Any],
    outputs: Mapping[str, Any],
    frame: LoopFrame | None,
) -> Any:
    if reference.root == "params":
        return resolve_path(params, list(reference.segments))
    if reference.root == "phases":
        return resolve_path(outputs, list(reference.segments))
    if frame is None:
        raise KeyError("loop")
    if reference.segments[0] == "iteration":
        return frame.iteration
    if frame.feedback is None:
        raise KeyError("loop.feedback")
    return resolve_path(frame.feedback, list(reference.segments[1:]))


def resolve_inputs(
    template: Any,
    *,
    params: Mapping[str, Any],
    outputs: Mapping[str, Any],
    frame: LoopFrame | None = None,
    phase: str | None = None,
) -> Any:
    if is_reference(template):
        reference = parse_reference(template)
        try:
            value = _lookup(reference, params=params, outputs=outputs, frame=frame)
        except KeyError as exc:
            if reference.optional:
                return None
            raise MissingInput(
                f"Input reference '{template}' could not be resolved ({exc.args[0]} is missing).",
                phase=phase,
                reference=template,
            ) from exc
        if value is None and not reference.optional:
            raise MissingInput(
                f"Input reference '{template}' resolved to null.",
                phase=phase,
                reference=template,
            )
        return copy.deepcopy(value)
    if isinstance(template, Mapping):
        return {
            key: resolve_inputs(value, params=params, outputs=outputs, frame=frame, phase=phase)
            for key, value in template.items()
        }
    if isinstance(template, (list, tuple)):
        return [
            resolve_inputs(value, params=params, outputs=outputs, frame=frame, phase=phase)
            for value in template
        ]
    return template
