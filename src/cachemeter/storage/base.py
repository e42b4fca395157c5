from typing import Protocol

from cachemeter.result import Result


class PersistentStore(Protocol):
    """
    PersistentStore stands as the common protocol that every
    key -> string blob backend must satisfy.

    Backends never raise from these methods: failures come back as
    Err results so that callers can degrade to "no cache".
    """

    async def get_item(self, key: "str") -> "Result[str | None]": ...

    async def set_item(self, key: "str", value: "str") -> "Result[None]": ...

    async def remove_item(self, key: "str") -> "Result[None]": ...

    async def get_all_keys(self) -> "Result[list[str]]": ...

    async def close(self) -> "None": ...
