from __future__ import annotations

from typing import Any, Optional


class CodingError(Exception):
    pass


# -------------------- Index layer --------------------
class VectorIndexError(CodingError):
    pass


class DimensionMismatch(VectorIndexError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Vector dimension {actual} does not match index dimension {expected}")
        self.expected = expected
        self.actual = actual


class CapacityExceeded(VectorIndexError):
    def __init__(self, max_elements: int):
        super().__init__(f"Index is full (max_elements={max_elements})")
        self.max_elements = max_elements


class DuplicateIdentifier(VectorIndexError):
    def __init__(self, identifier: str):
        super().__init__(f"Identifier already indexed: {identifier!r}")
        self.identifier = identifier


class EmptyIndex(VectorIndexError):
    def __init__(self):
        super().__init__("Index has no items; insert before querying.")


class BatchInsertError(VectorIndexError):
    """First failure of a batch insert. Items before it stay inserted."""

    def __init__(self, inserted: int, cause: VectorIndexError):
        super().__init__(f"Batch insert stopped after {inserted} item(s): {cause}")
        self.inserted = inserted
        self.cause = cause


# -------------------- Pipeline / boundary layer --------------------
class SchemaValidationFailure(CodingError):
    def __init__(self, message: str, raw: Optional[Any] = None):
        super().__init__(f"Schema validation failed: {message}")
        self.raw = raw


class CollaboratorUnavailable(CodingError):
    pass


class StageFailure(CodingError):
    def __init__(self, stage: Any, cause: Any):
        label = getattr(stage, "label", None)
        name = f"{stage.value} {label}" if label else str(stage)
        super().__init__(f"{name} failed: {cause}")
        self.stage = stage
        self.cause = cause
