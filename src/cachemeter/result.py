from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class StorageErrorKind(str, Enum):
    """
    StorageErrorKind classifies persistence failures. None of them
    is fatal: readers treat the key as absent and writers drop the
    write.
    """

    UNAVAILABLE = "unavailable"
    CORRUPT_BLOB = "corrupt_blob"
    WRITE_FAILURE = "write_failure"
    # a fetch callable failed before anything reached the cache
    FETCH_FAILURE = "fetch_failure"


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: "T"


@dataclass(frozen=True, slots=True)
class Err:
    kind: "StorageErrorKind"
    detail: "str" = ""


Result = Union[Ok[T], Err]
