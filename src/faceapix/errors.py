"""Exception hierarchy for faceapix.

Load-time and lifecycle errors are fatal to the call that triggered them.
``PerFaceProcessingFailure`` is the only error the pipelines catch: it is
attached to the failing face instead of aborting the whole call.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class FaceApiError(Exception):
    """Base class for all faceapix errors."""


class WeightShapeMismatch(FaceApiError):
    """The weight buffer does not match the network's parameter layout."""

    def __init__(
        self,
        network: str,
        expected: int,
        actual: int,
        *,
        parameter: str | None = None,
        missing: Sequence[str] = (),
        unexpected: Sequence[str] = (),
    ) -> None:
        subject = f"{network}/{parameter}" if parameter else network
        message = f"{subject}: expected {expected} float32 weight values, got {actual}"
        if missing:
            message += f"; missing {_preview(missing)}"
        if unexpected:
            message += f"; unexpected {_preview(unexpected)}"
        super().__init__(message)
        self.network = network
        self.expected = expected
        self.actual = actual
        self.parameter = parameter
        self.missing = tuple(missing)
        self.unexpected = tuple(unexpected)


def _preview(names: Sequence[str], limit: int = 5) -> str:
    shown = ", ".join(names[:limit])
    return f"{shown} (+{len(names) - limit} more)" if len(names) > limit else shown


class WeightSourceUnavailable(FaceApiError):
    """A weight path or registry name could not be resolved to readable weights."""


class QuantizedWeightsUnsupported(WeightSourceUnavailable):
    """The network refuses quantized weight sources."""


class NetworkNotLoaded(FaceApiError):
    """``forward`` was called before ``load`` completed."""


class NetworkDisposed(FaceApiError):
    """The network was used after ``dispose``."""


class InvalidImageInput(FaceApiError):
    """The input image is empty or has an unsupported shape or channel count."""


class TensorReleased(FaceApiError):
    """A tensor's data was accessed after it was released."""


class PerFaceProcessingFailure(FaceApiError):
    """Cropping, landmark or descriptor computation failed for one face."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} failed: {reason}")
        self.stage = stage
        self.reason = reason
