"""Annotation recorders."""

from faultlab.annotations.recorder import AnnotationRecorder, InMemoryAnnotationRecorder, matches
from faultlab.annotations.sqlite_recorder import SQLiteAnnotationRecorder

__all__ = [
    "AnnotationRecorder",
    "InMemoryAnnotationRecorder",
    "SQLiteAnnotationRecorder",
    "matches",
]
