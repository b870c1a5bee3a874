"""
Video status state machine.

    uploaded -> processing -> face_detection_complete -> completed
         \\___________\\___________________\\____________> failed

Only the processing pipeline drives these transitions. Reprocessing is a
reset performed by the producer, not a transition.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Union

from .errors import InvalidTransitionError


class VideoStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    FACE_DETECTION_COMPLETE = "face_detection_complete"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[VideoStatus] = frozenset({VideoStatus.COMPLETED, VideoStatus.FAILED})

# target -> statuses it may be entered from. PROCESSING -> PROCESSING is the
# re-claim of a retried attempt and FACE_DETECTION_COMPLETE may be re-recorded
# by a redelivered job; neither lowers progress.
ALLOWED_SOURCES: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    VideoStatus.PROCESSING: frozenset({VideoStatus.UPLOADED, VideoStatus.PROCESSING}),
    VideoStatus.FACE_DETECTION_COMPLETE: frozenset({
        VideoStatus.PROCESSING,
        VideoStatus.FACE_DETECTION_COMPLETE,
    }),
    VideoStatus.COMPLETED: frozenset({VideoStatus.FACE_DETECTION_COMPLETE}),
    VideoStatus.FAILED: frozenset({
        VideoStatus.UPLOADED,
        VideoStatus.PROCESSING,
        VideoStatus.FACE_DETECTION_COMPLETE,
    }),
}

# Progress checkpoint written when a status is entered
CHECKPOINT_PROGRESS: Dict[VideoStatus, int] = {
    VideoStatus.PROCESSING: 10,
    VideoStatus.FACE_DETECTION_COMPLETE: 50,
    VideoStatus.COMPLETED: 100,
}

# Statuses from which the producer may reset a video for reprocessing
RESETTABLE_STATES: FrozenSet[VideoStatus] = frozenset({
    VideoStatus.UPLOADED,
    VideoStatus.COMPLETED,
    VideoStatus.FAILED,
})


def coerce_status(value: Union[str, VideoStatus, None]) -> Optional[VideoStatus]:
    if value is None or isinstance(value, VideoStatus):
        return value
    return VideoStatus(value)


def allowed_sources(target: Union[str, VideoStatus]) -> FrozenSet[VideoStatus]:
    target = coerce_status(target)
    if target not in ALLOWED_SOURCES:
        raise ValueError(f"{target.value} cannot be entered by the pipeline")
    return ALLOWED_SOURCES[target]


def can_transition(current: Union[str, VideoStatus, None], target: Union[str, VideoStatus]) -> bool:
    current = coerce_status(current)
    target = coerce_status(target)
    return target in ALLOWED_SOURCES and current in ALLOWED_SOURCES[target]


def check_transition(video_id: str, current: Union[str, VideoStatus, None], target: Union[str, VideoStatus]) -> None:
    """Raise InvalidTransitionError when current -> target is not allowed"""
    if not can_transition(current, target):
        current = coerce_status(current)
        raise InvalidTransitionError(
            video_id,
            current.value if current else None,
            coerce_status(target).value,
        )
